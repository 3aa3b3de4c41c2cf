"""Runtime settings for bam deploys."""

from .settings import Settings

__all__ = ["Settings"]
