"""Command line interface."""

from bam_deploy.cli.main import cli

__all__ = ['cli']
