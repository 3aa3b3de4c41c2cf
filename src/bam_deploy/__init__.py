"""bam: deploy Lambda functions behind API Gateway and keep them in sync."""

__version__ = "0.3.0"
