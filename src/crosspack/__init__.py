"""crosspack - multi-target build and packaging for Rust applications."""

__version__ = "0.1.0"
