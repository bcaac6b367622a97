from hybrid_brain.utils.event_queue import StreamChunk, StreamingEventQueue

__all__ = ["StreamChunk", "StreamingEventQueue"]
