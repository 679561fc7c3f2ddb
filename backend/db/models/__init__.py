"""Database models for the automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.organization import Organization
from db.models.workflow import Workflow
from db.models.workflow_run import WorkflowRun
from db.models.schedule import Schedule
from db.models.integration import Integration
from db.models.objective import Objective
from db.models.key_result import KeyResult
from db.models.activity_log import ActivityLog
from db.models.data_table import DataTable
from db.models.email_template import EmailTemplate
from db.models.address_record import AddressRecord
from db.models.work_item import WorkItem

__all__ = [
    "Organization",
    "Workflow",
    "WorkflowRun",
    "Schedule",
    "Integration",
    "Objective",
    "KeyResult",
    "ActivityLog",
    "DataTable",
    "EmailTemplate",
    "AddressRecord",
    "WorkItem",
]
