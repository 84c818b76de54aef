"""HTTP remote build cache gateway with pluggable artifact storage."""

__version__ = "0.1.0"
