"""Lambda function creation, updates and deployment packages."""

import io
import os
import shutil
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from bam_deploy.config.settings import Settings
from bam_deploy.provisioners.base import BaseProvisioner
from bam_deploy.utils.aws_client import AWSClientManager
from bam_deploy.utils.errors import get_error_code
from bam_deploy.utils.logging import get_logger
from bam_deploy.utils.retry import RetryExecutor

logger = get_logger(__name__)

SKIPPED_DIRS = {'__pycache__', '.git', '.venv', 'venv', '.pytest_cache', '.mypy_cache', '.bam'}
SKIPPED_SUFFIXES = ('.pyc', '.pyo', '.DS_Store')
ENTRY_POINT_SUFFIXES = ('.py', '.js')

# A role created moments ago cannot be assumed yet; Lambda reports this as an
# invalid parameter until IAM has propagated it.
ROLE_NOT_READY_ERROR = 'InvalidParameterValueException'


class FunctionProvisioner(BaseProvisioner):
    """Creates and updates the function behind a resource name."""

    def __init__(self, clients: AWSClientManager, settings: Optional[Settings] = None):
        """Initialize function provisioner.

        Args:
            clients: Client manager used for Lambda calls
            settings: Runtime, handler and retry tunables
        """
        super().__init__(clients)
        self.settings = settings or Settings()

    @property
    def lambda_client(self):
        return self.clients.get_client('lambda')

    def create_function(
        self,
        function_name: str,
        description: str,
        zip_bytes: bytes,
        role_arn: str
    ) -> Dict[str, Any]:
        """Create the function, retrying while its role is still propagating.

        Returns:
            Function configuration returned by Lambda
        """
        executor = RetryExecutor(
            ROLE_NOT_READY_ERROR,
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )
        response = executor.execute(
            self.lambda_client.create_function,
            FunctionName=function_name,
            Runtime=self.settings.runtime,
            Role=role_arn,
            Handler=self.settings.handler,
            Code={'ZipFile': zip_bytes},
            Description=description,
        )
        logger.info(f"Lambda \"{function_name}\" has been created")
        return response

    def update_function(
        self,
        function_name: str,
        zip_bytes: Optional[bytes] = None,
        description: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Push new configuration and code to an existing function.

        Returns:
            The latest Lambda response, or None if the function does not exist
        """
        try:
            response = self.get_function_configuration(function_name)
        except ClientError as e:
            if get_error_code(e) == 'ResourceNotFoundException':
                logger.warning(f"Lambda \"{function_name}\" does not exist")
                return None
            raise

        if description is not None:
            response = self.lambda_client.update_function_configuration(
                FunctionName=function_name,
                Description=description,
            )
            self._wait_until_updated(function_name)

        if zip_bytes is not None:
            response = self.lambda_client.update_function_code(
                FunctionName=function_name,
                ZipFile=zip_bytes,
            )
            self._wait_until_updated(function_name)

        return response

    def get_function_configuration(self, function_name: str) -> Dict[str, Any]:
        return self.lambda_client.get_function(FunctionName=function_name)['Configuration']

    def _wait_until_updated(self, function_name: str) -> None:
        waiter = self.lambda_client.get_waiter('function_updated')
        waiter.wait(FunctionName=function_name)


def package_source(source, staging_dir, function_name: Optional[str] = None) -> bytes:
    """Stage a function's source and zip it into a deployment package.

    A single file is copied in as ``index`` with its original suffix, which
    matches the default ``index.handler``. A directory is copied as is,
    except that a top-level ``<function_name>.py`` or ``.js`` becomes
    ``index`` when the directory has no index file of that kind.
    Installing third-party dependencies is left to the user.

    Args:
        source: Path to a source file or directory
        staging_dir: Scratch directory, replaced on every call
        function_name: Name of the function being packaged

    Returns:
        Zip file contents as bytes
    """
    source = Path(source)
    staging_dir = Path(staging_dir)

    if staging_dir.exists():
        shutil.rmtree(staging_dir)

    if source.is_file():
        staging_dir.mkdir(parents=True)
        shutil.copyfile(source, staging_dir / f"index{source.suffix}")
    elif source.is_dir():
        shutil.copytree(
            source,
            staging_dir,
            ignore=shutil.ignore_patterns(*SKIPPED_DIRS, *(f"*{s}" for s in SKIPPED_SUFFIXES)),
        )
        if function_name:
            _rename_entry_point(staging_dir, function_name)
    else:
        raise ValueError(f"Code path does not exist: {source}")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for root, dirs, files in os.walk(staging_dir):
            dirs.sort()
            for file in sorted(files):
                file_path = os.path.join(root, file)
                zipf.write(file_path, os.path.relpath(file_path, staging_dir))

    return buffer.getvalue()


def _rename_entry_point(staging_dir: Path, function_name: str) -> None:
    for suffix in ENTRY_POINT_SUFFIXES:
        named = staging_dir / f"{function_name}{suffix}"
        index = staging_dir / f"index{suffix}"
        if named.is_file() and not index.exists():
            named.rename(index)
            logger.debug(f"Packaged {named.name} as {index.name}")
