"""Meeting recorder: chunked capture with in-order transcription."""

__version__ = "0.1.0"
