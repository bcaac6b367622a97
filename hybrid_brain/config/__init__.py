from hybrid_brain.config.loader import BrainSettings, load_settings

__all__ = ["BrainSettings", "load_settings"]
