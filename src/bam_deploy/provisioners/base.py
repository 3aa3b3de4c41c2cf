"""Shared base for the AWS provisioners."""

from enum import Enum

from bam_deploy.utils.aws_client import AWSClientManager


class ChangeType(Enum):
    """Type of change planned for a remote resource."""
    CREATE = "create"
    DELETE = "delete"


class BaseProvisioner:
    """Base class for provisioners; holds the client manager."""

    def __init__(self, clients: AWSClientManager):
        """Initialize provisioner.

        Args:
            clients: Client manager used for every AWS call
        """
        self.clients = clients

    @property
    def region(self) -> str:
        return self.clients.get_region()
