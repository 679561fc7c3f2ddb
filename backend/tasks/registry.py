"""
Step Type Registry — Central registry for all available step handlers.

Maintains a mapping of step type strings to their handler classes.
"""

from typing import Dict, Optional, Type

from tasks.base_task import BaseStepHandler, StepServices
from tasks.implementations.basic_steps import BASIC_STEP_TYPES
from tasks.implementations.database_task import DATABASE_STEP_TYPES
from tasks.implementations.http_task import HTTP_STEP_TYPES
from tasks.implementations.integration_task import INTEGRATION_STEP_TYPES
from tasks.implementations.strategy_task import STRATEGY_STEP_TYPES
from tasks.implementations.transform_task import TRANSFORM_STEP_TYPES
from tasks.implementations.work_item_task import WORK_ITEM_STEP_TYPES


class TaskRegistry:
    """Central registry for all step handler implementations."""

    def __init__(self):
        self._tasks: Dict[str, Type[BaseStepHandler]] = {}
        self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in step types."""
        for group in (
            BASIC_STEP_TYPES,
            HTTP_STEP_TYPES,
            TRANSFORM_STEP_TYPES,
            INTEGRATION_STEP_TYPES,
            DATABASE_STEP_TYPES,
            STRATEGY_STEP_TYPES,
            WORK_ITEM_STEP_TYPES,
        ):
            for step_type, handler_class in group.items():
                self.register(step_type, handler_class)

    def register(self, step_type: str, handler_class: Type[BaseStepHandler]):
        """Register a new step type."""
        self._tasks[step_type] = handler_class

    def get(self, step_type: str) -> Optional[Type[BaseStepHandler]]:
        """Get a handler class by type string."""
        return self._tasks.get(step_type)

    def create_instance(
        self,
        step_type: str,
        services: Optional[StepServices] = None,
    ) -> Optional[BaseStepHandler]:
        """Create a new handler instance bound to the executor's services."""
        handler_class = self.get(step_type)
        if handler_class:
            return handler_class(services)
        return None

    @property
    def available_types(self) -> list:
        return list(self._tasks.keys())


# Singleton
_registry: Optional[TaskRegistry] = None


def get_task_registry() -> TaskRegistry:
    """Get or create the singleton task registry."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry
