"""Database models for the workflow automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.credential import Credential
from db.models.storage import StorageTable, StorageRecord
from db.models.workflow_run import WorkflowRun
from db.models.queue_job import QueueJobRecord
from db.models.job_log import JobLog
from db.models.capability_usage import CapabilityUsage

__all__ = [
    "Workflow",
    "Credential",
    "StorageTable",
    "StorageRecord",
    "WorkflowRun",
    "QueueJobRecord",
    "JobLog",
    "CapabilityUsage",
]
