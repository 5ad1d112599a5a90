"""Deploy fly.io apps from app and project trees described in YAML."""

__version__ = "0.0.48"