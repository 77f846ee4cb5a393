"""
Workflow-tracking projects.

A unit being digitized may be wrapped in a project tracked by the imaging
service. Finalization reports its outcome to that project. Two trackers
exist: one that calls the imaging service API, and one that updates the
projects table directly. ``projects.mode`` selects between them.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from omegaconf import DictConfig

from .database import JobDatabase
from .errors import RequestError
from .http_client import ServiceClient
from .models import Project

logger = logging.getLogger(__name__)

JWT_LIFETIME = timedelta(minutes=5)


def processing_minutes(started_at: Optional[datetime], ended_at: Optional[datetime] = None) -> int:
    """Whole minutes between two timestamps, rounded to nearest."""
    if started_at is None:
        return 0
    end = ended_at or datetime.now(timezone.utc)
    return int(round((end - started_at).total_seconds() / 60.0))


class ProjectTracker(ABC):
    @abstractmethod
    def lookup(self, unit_id: int) -> Optional[Project]:
        """The project wrapping a unit, or None when there is none."""

    @abstractmethod
    def finalization_succeeded(self, project_id: int, processing_mins: int) -> None:
        ...

    @abstractmethod
    def finalization_failed(self, project_id: int, reason: str, processing_mins: int, job_id: int) -> None:
        ...


class HttpProjectTracker(ProjectTracker):
    """Reports to the imaging service with short-lived bearer tokens."""

    def __init__(self, client: ServiceClient, base_url: str, jwt_key: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.jwt_key = jwt_key

    def lookup(self, unit_id: int) -> Optional[Project]:
        body = self.client.get(f"{self.base_url}/projects/lookup", params={"unit": unit_id})
        data = json.loads(body)
        if not data.get("exists"):
            return None
        return Project(
            id=data["projectID"],
            unit_id=unit_id,
            workflow=data.get("workflow", ""),
            current_step=data.get("currentStep", ""),
            finished=bool(data.get("finished", False)),
        )

    def finalization_succeeded(self, project_id: int, processing_mins: int) -> None:
        self._post(f"projects/{project_id}/done", {"processingMins": processing_mins})

    def finalization_failed(self, project_id: int, reason: str, processing_mins: int, job_id: int) -> None:
        self._post(
            f"projects/{project_id}/fail",
            {"reason": reason, "processingMins": processing_mins, "jobID": job_id},
        )

    def _post(self, path: str, payload: dict) -> None:
        token = self._mint_token()
        logger.info(f"auth project POST to {path} with payload [{payload}]")
        self.client.post_json(
            f"{self.base_url}/{path}",
            payload,
            headers={"Authorization": f"Bearer {token}"},
        )

    def _mint_token(self) -> str:
        if not self.jwt_key:
            raise RequestError(500, "projects.jwt_key is not configured")
        now = datetime.now(timezone.utc)
        claims = {"iss": "dpg-jobs", "iat": now, "exp": now + JWT_LIFETIME}
        return jwt.encode(claims, self.jwt_key, algorithm="HS256")


class DatabaseProjectTracker(ProjectTracker):
    """Records finalization outcomes directly on the projects table."""

    def __init__(self, database: JobDatabase) -> None:
        self.database = database

    def lookup(self, unit_id: int) -> Optional[Project]:
        return self.database.get_unit_project(unit_id)

    def finalization_succeeded(self, project_id: int, processing_mins: int) -> None:
        self.database.finish_project(project_id, processing_mins)

    def finalization_failed(self, project_id: int, reason: str, processing_mins: int, job_id: int) -> None:
        self.database.fail_project(project_id, f"Job {job_id}: {reason}", processing_mins)


def make_project_tracker(config: DictConfig, database: JobDatabase, client: ServiceClient) -> ProjectTracker:
    mode = config.projects.mode
    if mode == "database":
        return DatabaseProjectTracker(database)
    if mode == "http":
        return HttpProjectTracker(client, config.projects.url, config.projects.jwt_key)
    raise ValueError(f"unknown projects.mode: {mode}")
