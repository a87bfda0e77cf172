"""
Request Store: one JSON record per ApprovalRequest.

Terminal requests are kept for audit; the orchestrator refuses to mutate them.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional

from steward.lib.errors import NotFound
from steward.lib.validate import write_json_atomic
from steward.models import ApprovalRequest, RequestState

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r'[^A-Za-z0-9_.-]')


class RequestStore:

    def __init__(self, root: Path):
        self.root = root

    @classmethod
    def in_state_dir(cls, state_dir: Path) -> "RequestStore":
        return cls(state_dir / "requests")

    def _path(self, request_id: str) -> Path:
        return self.root / f"{_UNSAFE.sub('_', request_id)}.json"

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        path = self._path(request_id)
        if not path.exists():
            return None
        return ApprovalRequest.from_dict(json.loads(path.read_text()))

    def require(self, request_id: str) -> ApprovalRequest:
        request = self.get(request_id)
        if request is None:
            raise NotFound(request_id, "Approval request not found")
        return request

    def save(self, request: ApprovalRequest) -> None:
        write_json_atomic(request.to_dict(), "request", self._path(request.request_id))

    def list(self, state: RequestState | None = None) -> list[ApprovalRequest]:
        """All requests, oldest first."""
        if not self.root.exists():
            return []
        requests = []
        for path in self.root.glob("*.json"):
            try:
                request = ApprovalRequest.from_dict(json.loads(path.read_text()))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable request record {path.name}: {e}")
                continue
            if state is None or request.state == state:
                requests.append(request)
        return sorted(requests, key=lambda r: (r.created_at, r.request_id))
