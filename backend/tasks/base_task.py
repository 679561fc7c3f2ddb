"""
Base interface for all workflow step handlers.

Every step kind (log_event, api_call, strategy_update, ...) has one handler
class that inherits from BaseStepHandler and implements execute(). The
engine only ever calls run(), which never raises: it converts any exception
into a failed StepResult carrying the message, the traceback and whether a
retry could help.
"""

import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.exceptions import AutomationError, IntegrationRequestError

if TYPE_CHECKING:
    from integrations.dispatcher import ActionDispatcher
    from notifications.manager import NotificationManager
    from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


class StepResult:
    """Standardized result from step execution."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        stack: Optional[str] = None,
        retryable: bool = True,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.stack = stack
        self.retryable = retryable
        self.duration_ms = duration_ms
        self.attempts = 1
        self.timestamp = datetime.now(timezone.utc)

    @classmethod
    def ok(cls, output: Any = None) -> "StepResult":
        return cls(success=True, output=output)

    @classmethod
    def failed(cls, error: str, stack: Optional[str] = None, retryable: bool = True) -> "StepResult":
        return cls(success=False, error=error, stack=stack, retryable=retryable)

    def __repr__(self) -> str:
        state = "ok" if self.success else f"failed: {self.error}"
        return f"<StepResult {state}>"


@dataclass
class StepServices:
    """Collaborators shared by all handlers of one executor.

    ``execute_step`` runs a nested step (condition branches, for_each
    children) through the owning StepExecutor.
    """

    session_factory: async_sessionmaker
    settings: Settings
    notifications: "NotificationManager"
    dispatcher: "ActionDispatcher"
    execute_step: Optional[Callable[[dict, "ExecutionContext"], Awaitable[StepResult]]] = None


def config_value(config: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present, non-None value among alternative config keys."""
    for name in names:
        value = config.get(name)
        if value is not None:
            return value
    return default


class BaseStepHandler(ABC):
    """
    Abstract base class for all step handlers.

    Subclasses must implement:
    - execute(config, context) -> StepResult
    - step_type (class attribute)
    - display_name (class attribute)
    """

    step_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract base step"

    def __init__(self, services: Optional[StepServices] = None):
        self.services = services

    @property
    def settings(self) -> Settings:
        return self.services.settings if self.services else get_settings()

    @abstractmethod
    async def execute(
        self,
        config: Dict[str, Any],
        context: "ExecutionContext",
    ) -> StepResult:
        """
        Execute the step with given configuration.

        Args:
            config: Step-specific configuration (the step's ``config`` object)
            context: Execution context; writes go through ``context.set``

        Returns:
            StepResult with output or error
        """
        pass

    async def run(
        self,
        config: Dict[str, Any],
        context: "ExecutionContext",
        step_name: Optional[str] = None,
    ) -> StepResult:
        """
        Run the step with timing and error handling.

        This is the main entry point called by the step executor.
        """
        start = time.monotonic()
        name = step_name or self.display_name
        try:
            logger.info("Step starting", step_type=self.step_type, step_name=name)
            result = await self.execute(config or {}, context)
            result.duration_ms = (time.monotonic() - start) * 1000

            logger.info(
                "Step completed",
                step_type=self.step_type,
                step_name=name,
                success=result.success,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            retryable = e.retryable if isinstance(e, AutomationError) else True
            logger.error(
                "Step failed",
                step_type=self.step_type,
                step_name=name,
                error=str(e),
                retryable=retryable,
                duration_ms=round(duration_ms, 2),
            )
            result = StepResult.failed(
                error=str(e),
                stack=traceback.format_exc(),
                retryable=retryable,
            )
            if isinstance(e, IntegrationRequestError) and e.body is not None:
                result.output = {"status_code": e.status_code, "body": e.body}
            result.duration_ms = duration_ms
            return result
