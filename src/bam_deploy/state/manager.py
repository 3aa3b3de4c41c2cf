"""Read-modify-write access to the JSON state files under ``.bam/``."""

import json
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import ValidationError

from bam_deploy.state.models import ApiRecord, FunctionRecord, MethodPermissionIds, ProjectConfig
from bam_deploy.utils.errors import ConfigurationError, StateError
from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)

BAM_DIR = ".bam"
CONFIG_FILE = "config.json"
FUNCTIONS_LIBRARY = "functions/library.json"
APIS_LIBRARY = "apis/library.json"
STAGING_DIR = "stages"


class StateStore:
    """Typed access to the local record of what has been deployed.

    Three files are managed, each one JSON object:

    * ``config.json``: account number, region and execution role name
    * ``functions/library.json``: region -> function name -> FunctionRecord
    * ``apis/library.json``: region -> function name -> ApiRecord

    Every mutating method re-reads the file it changes, so callers never hold
    a stale copy across a write. There is no locking; concurrent runs against
    one project directory can lose updates.
    """

    def __init__(self, path):
        """
        Initialize StateStore.

        Args:
            path: Project directory that contains (or will contain) ``.bam/``
        """
        self.project_path = Path(path)
        self.bam_path = self.project_path / BAM_DIR

    # -- raw json -------------------------------------------------------

    def _read_json(self, relative: str, default: Optional[dict] = None) -> Dict[str, Any]:
        file_path = self.bam_path / relative
        if not file_path.exists():
            if default is not None:
                return dict(default)
            raise StateError(f"State file not found: {file_path}")

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {file_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {file_path}: {e}", cause=e)

        if not isinstance(data, dict):
            raise StateError(f"State file {file_path} must contain a JSON object")
        return data

    def _write_json(self, relative: str, data: Mapping[str, Any]) -> None:
        file_path = self.bam_path / relative
        file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = file_path.with_suffix(".tmp")

        try:
            payload = json.dumps(data, indent=2, ensure_ascii=False)
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            temp_path.replace(file_path)
        except (TypeError, ValueError, OSError) as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StateError(f"Failed to save state file {file_path}: {e}", cause=e)

    # -- config ---------------------------------------------------------

    def initialize(self, config: ProjectConfig) -> None:
        """Create the ``.bam/`` tree with the given config and empty libraries."""
        self.bam_path.mkdir(parents=True, exist_ok=True)
        self.write_config(config)
        for library in (FUNCTIONS_LIBRARY, APIS_LIBRARY):
            if not (self.bam_path / library).exists():
                self._write_json(library, {})
        logger.info(f"Initialized project state in {self.bam_path}")

    def exists(self) -> bool:
        return (self.bam_path / CONFIG_FILE).exists()

    def read_config(self) -> ProjectConfig:
        """Load ``config.json``.

        Raises:
            ConfigurationError: If the file is missing or incomplete
        """
        try:
            data = self._read_json(CONFIG_FILE)
        except StateError as e:
            raise ConfigurationError(
                str(e),
                cause=e.cause,
                suggestions=["Run `bam init` to configure this project"],
            )

        try:
            config = ProjectConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config.json: {e}", cause=e)

        if not config.is_configured():
            raise ConfigurationError(
                "config.json must set accountNumber, region and role",
                suggestions=["Run `bam init` to configure this project"],
            )
        return config

    def write_config(self, config: ProjectConfig) -> None:
        self._write_json(CONFIG_FILE, config.to_json_dict())

    # -- functions library ----------------------------------------------

    def read_functions(self) -> Dict[str, Dict[str, Any]]:
        data = self._read_json(FUNCTIONS_LIBRARY, default={})
        if _is_flat_library(data):
            # Libraries written before region scoping hold records at the top level
            region = self.read_config().region
            logger.debug(f"Reading flat function library as region {region}")
            data = {region: data}
        return data

    def write_functions(self, functions: Mapping[str, Any]) -> None:
        self._write_json(FUNCTIONS_LIBRARY, functions)

    def get_function(self, region: str, name: str) -> Optional[FunctionRecord]:
        raw = self.read_functions().get(region, {}).get(name)
        if raw is None:
            return None
        try:
            return FunctionRecord(**raw)
        except ValidationError as e:
            raise StateError(f"Invalid function record for {name}: {e}", cause=e)

    def write_function(self, region: str, name: str, arn: str, description: str = "") -> FunctionRecord:
        """Insert or update a function record, keeping any recorded API."""
        functions = self.read_functions()
        regional = functions.setdefault(region, {})
        existing = regional.get(name, {})

        record = FunctionRecord(arn=arn, description=description)
        if existing.get("api"):
            record.api = ApiRecord(**existing["api"])

        regional[name] = record.to_json_dict()
        self.write_functions(functions)
        return record

    def record_function_api(self, region: str, name: str, api: ApiRecord) -> None:
        """Attach an API record to a function entry.

        Raises:
            StateError: If the function is not in the library
        """
        functions = self.read_functions()
        regional = functions.get(region, {})
        if name not in regional:
            raise StateError(f"Function {name} is not recorded in region {region}")

        regional[name]["api"] = api.to_json_dict()
        self.write_functions(functions)

    # -- api registry ---------------------------------------------------

    def read_apis(self) -> Dict[str, Dict[str, Any]]:
        return self._read_json(APIS_LIBRARY, default={})

    def write_apis(self, apis: Mapping[str, Any]) -> None:
        self._write_json(APIS_LIBRARY, apis)

    def get_api(self, region: str, name: str) -> Optional[ApiRecord]:
        raw = self.read_apis().get(region, {}).get(name)
        if raw is None:
            return None
        try:
            return ApiRecord(**raw)
        except ValidationError as e:
            raise StateError(f"Invalid API record for {name}: {e}", cause=e)

    def write_api(
        self,
        region: str,
        name: str,
        rest_api_id: str,
        endpoint: str,
        method_permission_ids: Mapping[str, MethodPermissionIds],
    ) -> ApiRecord:
        """Replace the API record for ``name`` in ``region``."""
        record = ApiRecord(
            rest_api_id=rest_api_id,
            endpoint=endpoint,
            method_permission_ids=dict(method_permission_ids),
        )
        apis = self.read_apis()
        apis.setdefault(region, {})[name] = record.to_json_dict()
        self.write_apis(apis)
        return record

    def merge_api_permissions(
        self,
        region: str,
        name: str,
        added: Mapping[str, MethodPermissionIds],
        removed: Iterable[str] = (),
    ) -> ApiRecord:
        """Fold a reconciliation result into the stored permission map.

        New entries overwrite existing ones by method; removed methods are
        deleted. Nothing is written if the merge fails validation.

        Raises:
            StateError: If no API is recorded for ``name``
        """
        apis = self.read_apis()
        raw = apis.get(region, {}).get(name)
        if raw is None:
            raise StateError(f"No API recorded for {name} in region {region}")

        record = ApiRecord(**raw)
        merged = dict(record.method_permission_ids)
        merged.update(added)
        for method in removed:
            merged.pop(method, None)
        record.method_permission_ids = merged

        apis[region][name] = record.to_json_dict()
        self.write_apis(apis)
        return record

    # -- staging --------------------------------------------------------

    def staging_dir(self, name: str) -> Path:
        return self.bam_path / STAGING_DIR / name

    def delete_staging_dir(self, name: str) -> None:
        staging = self.staging_dir(name)
        if staging.exists():
            shutil.rmtree(staging)
            logger.debug(f"Removed staging directory {staging}")


def _is_flat_library(data: Mapping[str, Any]) -> bool:
    return any(isinstance(value, dict) and "arn" in value for value in data.values())
