from hybrid_brain.messages.adapter import ChatTurn, MessageAdapter

__all__ = ["ChatTurn", "MessageAdapter"]
