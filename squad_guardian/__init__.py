"""Squad Guardian: countdown missions that fine whoever shows up late."""

__version__ = "0.1.0"
