"""memoscribe - archive voice recordings and transcribe them with Whisper."""

__version__ = "0.1.0"
