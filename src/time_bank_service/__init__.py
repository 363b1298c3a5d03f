"""Time bank service: neighbours trade hours of help for time credits."""

__version__ = "0.1.0"
