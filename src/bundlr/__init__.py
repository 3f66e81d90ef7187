"""
bundlr: turn a Python package into a portable self-extracting executable.
"""

__version__ = "1.0.3"

__all__ = [
    "config",
    "targets",
    "resolver",
    "collector",
    "embedder",
    "bundle",
    "payload",
    "pipeline",
    "history",
    "manifest",
]
