"""podbrief - transcript acquisition for a podcast newsletter."""

__version__ = "0.1.0"
