"""Redis-backed storage of workflow definitions and their version history."""

import logging
import threading
from datetime import datetime, timezone

from redis import Redis

from models.definition import WorkflowDefinition, WorkflowVersion
from services.graph_validator import GraphValidator

logger = logging.getLogger(__name__)


class DefinitionNotFoundError(Exception):
    """Raised when a workflow definition is not found."""

    def __init__(self, workflow_name: str):
        self.workflow_name = workflow_name
        super().__init__(f"Workflow not found: {workflow_name}")


class DefinitionExistsError(Exception):
    """Raised when creating a workflow whose name is taken."""

    def __init__(self, workflow_name: str):
        self.workflow_name = workflow_name
        super().__init__(f"Workflow already exists: {workflow_name}")


class VersionNotFoundError(Exception):
    """Raised when a workflow version is not found."""

    def __init__(self, workflow_name: str, version: int):
        self.workflow_name = workflow_name
        self.version = version
        super().__init__(f"Version {version} not found for workflow: {workflow_name}")


class DefinitionConflictError(Exception):
    """Raised when an operation conflicts with the definition's current state."""

    def __init__(self, workflow_name: str, message: str):
        self.workflow_name = workflow_name
        super().__init__(message)


class DefinitionStore:
    """Current definition per workflow plus an append-only version history.

    Every save is validated first; invalid definitions are never written.
    """

    def __init__(self, redis_client: Redis, validator: GraphValidator | None = None):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client
        self._validator = validator or GraphValidator()
        self._lock = threading.RLock()

    def _names_key(self) -> str:
        return "workflows"

    def _definition_key(self, workflow_name: str) -> str:
        return f"workflow:{workflow_name}:definition"

    def _versions_key(self, workflow_name: str) -> str:
        return f"workflow:{workflow_name}:versions"

    @staticmethod
    def _decode(value):
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _load(self, workflow_name: str) -> WorkflowDefinition | None:
        data = self._redis.get(self._definition_key(workflow_name))
        if data is None:
            return None
        return WorkflowDefinition.model_validate_json(data)

    def _version_numbers(self, workflow_name: str) -> list[int]:
        return sorted(int(self._decode(v)) for v in self._redis.hkeys(self._versions_key(workflow_name)))

    def _write(
        self,
        definition: WorkflowDefinition,
        change_description: str | None = None,
        restored_from: int | None = None,
    ) -> WorkflowDefinition:
        name = definition.workflow_name
        version = WorkflowVersion(
            workflow_name=name,
            version=definition.version,
            definition=definition,
            created_at=definition.updated_at or self._utc_now(),
            change_description=change_description,
            restored_from=restored_from,
        )
        pipe = self._redis.pipeline()
        pipe.set(self._definition_key(name), definition.model_dump_json())
        pipe.hset(self._versions_key(name), str(definition.version), version.model_dump_json())
        pipe.sadd(self._names_key(), name)
        pipe.execute()
        return definition

    # Definitions

    def create(
        self, definition: WorkflowDefinition, change_description: str | None = None
    ) -> WorkflowDefinition:
        """Validate and store a new workflow as version 1."""
        if definition is None:
            raise ValueError("definition is required")

        with self._lock:
            if self._redis.sismember(self._names_key(), definition.workflow_name):
                raise DefinitionExistsError(definition.workflow_name)
            now = self._utc_now()
            stored = definition.model_copy(
                update={"version": 1, "created_at": now, "updated_at": now}
            )
            self._validator.validate(stored)
            self._write(stored, change_description or "Initial version")
        logger.info(f"Created workflow {stored.workflow_name}")
        return stored

    def update(
        self,
        workflow_name: str,
        definition: WorkflowDefinition,
        change_description: str | None = None,
    ) -> WorkflowDefinition:
        """Replace the definition, appending a new version."""
        if not workflow_name:
            raise ValueError("workflow_name is required")
        if definition is None:
            raise ValueError("definition is required")

        with self._lock:
            current = self.get(workflow_name)
            stored = definition.model_copy(
                update={
                    "workflow_name": workflow_name,
                    "version": self._next_version(workflow_name),
                    "created_at": current.created_at,
                    "updated_at": self._utc_now(),
                }
            )
            self._validator.validate(stored)
            self._write(stored, change_description)
        logger.info(f"Updated workflow {workflow_name} to v{stored.version}")
        return stored

    def get(self, workflow_name: str) -> WorkflowDefinition:
        if not workflow_name:
            raise ValueError("workflow_name is required")
        definition = self._load(workflow_name)
        if definition is None:
            raise DefinitionNotFoundError(workflow_name)
        return definition

    def exists(self, workflow_name: str) -> bool:
        return bool(self._redis.sismember(self._names_key(), workflow_name))

    def list_definitions(
        self,
        active: bool | None = None,
        enabled: bool | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[int, list[WorkflowDefinition]]:
        """Filtered page of definitions ordered by name, with the total match count."""
        if page < 1:
            raise ValueError("page must be positive")
        if limit < 1:
            raise ValueError("limit must be positive")

        names = sorted(self._decode(n) for n in self._redis.smembers(self._names_key()))
        matches = []
        for name in names:
            definition = self._load(name)
            if definition is None:
                continue
            if active is not None and definition.active != active:
                continue
            if enabled is not None and definition.enabled != enabled:
                continue
            if search:
                needle = search.lower()
                haystack = f"{definition.workflow_name} {definition.description or ''}".lower()
                if needle not in haystack:
                    continue
            matches.append(definition)

        start = (page - 1) * limit
        return len(matches), matches[start:start + limit]

    def delete(self, workflow_name: str) -> None:
        """Remove a definition and all its versions."""
        with self._lock:
            self.get(workflow_name)
            pipe = self._redis.pipeline()
            pipe.delete(self._definition_key(workflow_name))
            pipe.delete(self._versions_key(workflow_name))
            pipe.srem(self._names_key(), workflow_name)
            pipe.execute()
        logger.info(f"Deleted workflow {workflow_name}")

    # Flags

    def set_flags(
        self,
        workflow_name: str,
        active: bool | None = None,
        enabled: bool | None = None,
    ) -> WorkflowDefinition:
        """Change active/enabled without creating a new version."""
        with self._lock:
            current = self.get(workflow_name)
            update = {"updated_at": self._utc_now()}
            if active is not None:
                update["active"] = active
            if enabled is not None:
                update["enabled"] = enabled
            updated = current.model_copy(update=update)
            self._redis.set(self._definition_key(workflow_name), updated.model_dump_json())
        logger.info(
            f"Workflow {workflow_name} flags: active={updated.active} enabled={updated.enabled}"
        )
        return updated

    def activate(self, workflow_name: str) -> WorkflowDefinition:
        return self.set_flags(workflow_name, active=True)

    def deactivate(self, workflow_name: str) -> WorkflowDefinition:
        return self.set_flags(workflow_name, active=False)

    def toggle_active(self, workflow_name: str) -> WorkflowDefinition:
        with self._lock:
            return self.set_flags(workflow_name, active=not self.get(workflow_name).active)

    def toggle_enabled(self, workflow_name: str) -> WorkflowDefinition:
        with self._lock:
            return self.set_flags(workflow_name, enabled=not self.get(workflow_name).enabled)

    # Versions

    def _next_version(self, workflow_name: str) -> int:
        return max(self._version_numbers(workflow_name), default=0) + 1

    def list_versions(self, workflow_name: str) -> list[WorkflowVersion]:
        """Version history, newest first."""
        self.get(workflow_name)
        values = self._redis.hvals(self._versions_key(workflow_name))
        versions = [WorkflowVersion.model_validate_json(v) for v in values]
        return sorted(versions, key=lambda v: v.version, reverse=True)

    def get_version(self, workflow_name: str, version: int) -> WorkflowVersion:
        if not workflow_name:
            raise ValueError("workflow_name is required")
        data = self._redis.hget(self._versions_key(workflow_name), str(version))
        if data is None:
            raise VersionNotFoundError(workflow_name, version)
        return WorkflowVersion.model_validate_json(data)

    def restore_version(
        self,
        workflow_name: str,
        version: int,
        change_description: str | None = None,
    ) -> WorkflowDefinition:
        """Make an old version current again by appending a copy of it."""
        with self._lock:
            current = self.get(workflow_name)
            source = self.get_version(workflow_name, version)
            restored = source.definition.model_copy(
                update={
                    "version": self._next_version(workflow_name),
                    "active": current.active,
                    "enabled": current.enabled,
                    "created_at": current.created_at,
                    "updated_at": self._utc_now(),
                }
            )
            self._validator.validate(restored)
            self._write(
                restored,
                change_description or f"Restored from version {version}",
                restored_from=version,
            )
        logger.info(f"Restored workflow {workflow_name} v{version} as v{restored.version}")
        return restored

    def delete_version(self, workflow_name: str, version: int) -> None:
        """Delete a past version. The current version cannot be deleted."""
        with self._lock:
            current = self.get(workflow_name)
            if current.version == version:
                raise DefinitionConflictError(
                    workflow_name, f"Cannot delete current version {version} of {workflow_name}"
                )
            if not self._redis.hdel(self._versions_key(workflow_name), str(version)):
                raise VersionNotFoundError(workflow_name, version)
        logger.info(f"Deleted version {version} of workflow {workflow_name}")
