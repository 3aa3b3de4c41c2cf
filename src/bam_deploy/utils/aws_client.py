"""boto3 session and client management."""

from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError

from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientManager:
    """Owns one boto3 session and caches a client per service."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        session: Optional[boto3.Session] = None
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            session: Pre-built session, mostly for tests
        """
        self.profile = profile
        self.region = region
        self._session = session
        self._clients: Dict[str, Any] = {}
        self._account_id: Optional[str] = None

        self._boto_config = Config(
            retries={'mode': 'standard', 'max_attempts': 3},
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create the boto3 session."""
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.debug(f"Created AWS session - Region: {self._session.region_name}, "
                         f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'lambda', 'iam', 'apigateway')
        """
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(
                service_name, config=self._boto_config
            )
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]

    def get_region(self) -> str:
        return self.region or self.session.region_name

    def get_account_id(self) -> str:
        """Resolve the account id of the active credentials through STS.

        Raises:
            NoCredentialsError: If no credentials are configured
            ClientError: If the credentials are rejected
        """
        if self._account_id is None:
            try:
                identity = self.get_client('sts').get_caller_identity()
            except NoCredentialsError:
                logger.error("No AWS credentials found. Configure them with the AWS CLI "
                             "or environment variables.")
                raise
            except ClientError as e:
                logger.error(f"Failed to validate AWS credentials: {e}")
                raise
            self._account_id = identity['Account']
        return self._account_id
