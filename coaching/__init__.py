"""Live negotiation coaching: telephony audio in, transcripts and suggestions out."""

__version__ = "0.1.0"
