# -*- encoding: utf-8 -*-
"""
Repositories - Injected storage for approval and bundle documents.

Components never hard-code on-disk locations; they take a Repository.
Tests substitute InMemoryRepository.

Usage:
    from governed_bundle.repository import ApprovalRepository, FileRepository

    approvals = ApprovalRepository(FileRepository(".governed/approvals"))
    approvals.save("acme/api", approval)
    for a in approvals.list_for("acme/api"):
        print(a.role, a.user)
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Union

from .approval import Approval
from .archive import atomic_write_bytes, json_document
from .errors import BundleIOError, InputError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


def _check_key(key: str) -> str:
    if not key or "\0" in key:
        raise InputError(f"invalid repository key: {key!r}", operation="store")
    parts = PurePosixPath(key).parts
    if key.startswith("/") or any(p in ("..", ".") for p in parts):
        raise InputError(f"repository key escapes its root: {key}", operation="store")
    return "/".join(parts)


class Repository(ABC):
    """Key/document store. Keys are relative, slash-separated names."""

    @abstractmethod
    def store(self, key: str, document: Document) -> None:
        """Create or replace the document at ``key``."""

    @abstractmethod
    def load(self, key: str) -> Optional[Document]:
        """Return the document at ``key``, or None if absent."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Sorted keys starting with ``prefix``."""


class InMemoryRepository(Repository):
    """Dict-backed repository for tests and dry runs."""

    def __init__(self):
        self._docs: Dict[str, Document] = {}

    def store(self, key: str, document: Document) -> None:
        # Round-trip through JSON so callers cannot mutate stored state
        self._docs[_check_key(key)] = json.loads(json.dumps(document))

    def load(self, key: str) -> Optional[Document]:
        doc = self._docs.get(_check_key(key))
        return json.loads(json.dumps(doc)) if doc is not None else None

    def list(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._docs if k.startswith(prefix))


class FileRepository(Repository):
    """
    One JSON file per key under ``root`` (``<root>/<key>.json``).

    Writes are atomic. Keys cannot escape the root directory.
    """

    SUFFIX = ".json"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / (_check_key(key) + self.SUFFIX)

    def store(self, key: str, document: Document) -> None:
        path = self._path(key)
        atomic_write_bytes(path, json_document(document), operation="store")
        logger.debug(f"Stored {key} at {path}")

    def load(self, key: str) -> Optional[Document]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BundleIOError("load", str(path), details=str(e)) from e

    def list(self, prefix: str = "") -> List[str]:
        if not self.root.is_dir():
            return []
        keys = []
        for path in self.root.rglob(f"*{self.SUFFIX}"):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()[: -len(self.SUFFIX)]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class ApprovalRepository:
    """Standalone approval documents keyed ``<bundle_id>/<role>-<user>``."""

    def __init__(self, repository: Repository):
        self._repo = repository

    @staticmethod
    def key_for(bundle_id: str, approval: Approval) -> str:
        return f"{bundle_id}/{approval.document_name[: -len('.json')]}"

    def save(self, bundle_id: str, approval: Approval) -> str:
        key = self.key_for(bundle_id, approval)
        self._repo.store(key, approval.to_dict())
        logger.info(f"Saved approval {approval.role}:{approval.user} for {bundle_id}")
        return key

    def get(self, bundle_id: str, role: str, user: str) -> Optional[Approval]:
        for approval in self.list_for(bundle_id):
            if approval.identity == (role, user):
                return approval
        return None

    def list_for(self, bundle_id: str) -> List[Approval]:
        approvals = []
        prefix = f"{bundle_id}/"
        for key in self._repo.list(prefix):
            # Nested ids such as acme/api/v2 share the prefix
            if "/" in key[len(prefix):]:
                continue
            doc = self._repo.load(key)
            if doc is not None:
                approvals.append(Approval.from_dict(doc))
        return approvals
