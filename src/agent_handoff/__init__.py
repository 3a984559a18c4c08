"""Hand-off hub for coordinating work between autonomous coding agents."""

__version__ = "0.1.0"
