"""Request matching and settlement engine for a professional-services marketplace."""

__version__ = "0.1.0"
