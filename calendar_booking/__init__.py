"""Calendar booking core: Google Calendar tool-call execution for chat agents."""

__version__ = "1.0.0"
