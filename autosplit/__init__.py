"""Live-room monitor, recorder and post-processing pipeline."""

__version__ = "0.4.0"
