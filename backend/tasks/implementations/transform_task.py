"""Context-manipulating steps: data_transformation, condition, conditional_paths, for_each."""

from typing import Any, Dict, List

import structlog

from core.exceptions import ConfigurationError
from tasks.base_task import BaseStepHandler, StepResult, config_value
from workflow.conditions import evaluate_condition, match_path_condition
from workflow.context import ExecutionContext
from workflow.formula import evaluate_formula
from workflow.templating import get_nested_value

logger = structlog.get_logger(__name__)


class DataTransformationHandler(BaseStepHandler):
    """Compute a value from the context.

    Formula mode (``formula`` set): ``{var}`` tokens are substituted with
    numeric context values and the arithmetic is evaluated, rounded to two
    decimals; division by zero gives 0.

    Legacy mode (``transformation: {type, ...}``):
        json_path: ``{"type": "json_path", "path": "step1_output.data.total"}``
        mapping: ``{"type": "mapping", "mapping": {"target": "source.path"}}``

    ``result_variable`` stores the value into the context.
    """

    step_type = "data_transformation"
    display_name = "Data Transformation"
    description = "Evaluate a formula or reshape context data"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        lookup = context.lookup()
        result_variable = config_value(config, "result_variable", "resultVariable")
        formula = config.get("formula")

        if formula:
            result = evaluate_formula(formula, lookup)
            logger.info("Formula evaluated", formula=formula, result=result)
        else:
            transformation = config.get("transformation") or {}
            kind = transformation.get("type")
            if kind == "json_path":
                result = get_nested_value(lookup, transformation.get("path"))
            elif kind == "mapping":
                mapping = transformation.get("mapping") or {}
                result = {target: get_nested_value(lookup, path) for target, path in mapping.items()}
            elif kind is None:
                raise ConfigurationError("data_transformation requires 'formula' or 'transformation'")
            else:
                raise ConfigurationError(f"Unknown transformation type: {kind}")

        if result_variable:
            context.set(result_variable, result)
        return StepResult.ok(result)


def _branch_steps(branch: Any) -> List[dict]:
    if not branch:
        return []
    if isinstance(branch, dict):
        return [branch]
    if isinstance(branch, list):
        return branch
    raise ConfigurationError("Condition branch must be a step object or a list of steps")


class ConditionHandler(BaseStepHandler):
    """Evaluate ``{field, operator, value}`` and run the matching branch.

    Config:
        condition: ``{"field": "step1_output.result", "operator": "greaterThan", "value": 10}``
        if_true / if_false: Nested step object (or list of steps)
    """

    step_type = "condition"
    display_name = "Condition"
    description = "Branch on a predicate over the context"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        condition = config.get("condition")
        if condition is None and "field" in config:
            condition = {k: config.get(k) for k in ("field", "operator", "value")}
        if not condition:
            raise ConfigurationError("condition step requires 'condition'")

        condition_met = evaluate_condition(condition, context.lookup())
        branch_name = "if_true" if condition_met else "if_false"
        branch = config_value(config, branch_name, "ifTrue" if condition_met else "ifFalse")
        steps = _branch_steps(branch)

        outputs = []
        for nested in steps:
            result = await self.services.execute_step(nested, context)
            if not result.success:
                failed = StepResult.failed(
                    f"Branch '{branch_name}' step '{nested.get('name') or nested.get('type')}' failed: {result.error}",
                    stack=result.stack,
                    retryable=result.retryable,
                )
                failed.output = {"condition_met": condition_met, "branch": branch_name}
                return failed
            outputs.append(result.output)

        return StepResult.ok({
            "condition_met": condition_met,
            "branch": branch_name if steps else None,
            "branch_output": outputs[0] if len(outputs) == 1 else (outputs or None),
        })


class ForEachHandler(BaseStepHandler):
    """Run child steps once per item of a context list.

    Config:
        source_variable: Context path to a list
        child_steps: Steps run per item with ``current_item`` and
            ``current_index`` in scope

    Per-item failures are counted, not raised; the step itself succeeds.
    Child writes are scoped to their item and discarded afterwards.
    """

    step_type = "for_each"
    display_name = "For Each"
    description = "Iterate child steps over a list"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        source_variable = config_value(config, "source_variable", "sourceVariable")
        if not source_variable:
            raise ConfigurationError("source_variable is required for for_each step")

        items = get_nested_value(context.lookup(), source_variable)
        if not isinstance(items, list):
            raise ConfigurationError(
                f"Variable {{{source_variable}}} is not a list. Found: {type(items).__name__}"
            )

        child_steps = config_value(config, "child_steps", "childSteps", default=[])
        results = []
        success_count = 0
        error_count = 0

        for index, item in enumerate(items):
            scoped = context.fork()
            scoped.set("current_item", item)
            scoped.set("current_index", index)
            for child in child_steps:
                result = await self.services.execute_step(child, scoped)
                entry = {"item_index": index, "step": child.get("name") or child.get("type")}
                if result.success:
                    success_count += 1
                    entry["output"] = result.output
                else:
                    error_count += 1
                    entry["error"] = result.error
                    logger.warning("Child step failed", item_index=index, error=result.error)
                results.append(entry)

        return StepResult.ok({
            "items_processed": len(items),
            "success_count": success_count,
            "error_count": error_count,
            "results": results,
        })


class ConditionalPathsHandler(BaseStepHandler):
    """Run the first path whose conditions all hold, else the default path.

    Config::

        {"conditions": [
            {"field": "trigger.ticket.priority", "operator": "equals",
             "value": "high", "path_steps": [...]},
            {"conditions": [{"field": ..., "operator": ..., "value": ...}, ...],
             "path_steps": [...]}],
         "default_path": {"steps": [...]}}

    Clauses without a ``field`` are ignored. While a path runs, every
    non-empty step output is appended to ``path_results`` and the latest
    one is kept in ``last_output``; nested conditional steps continue the
    same ``path_results`` list.
    """

    step_type = "conditional_paths"
    display_name = "Conditional Paths"
    description = "Run the first matching path of several"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        for index, path in enumerate(config.get("conditions") or []):
            clauses = path.get("conditions") or [path]
            details = []
            for clause in clauses:
                if not clause.get("field"):
                    continue
                detail = match_path_condition(clause, context.lookup())
                details.append(detail)
                if not detail["matches"]:
                    break
            if details and not details[-1]["matches"]:
                continue

            logger.info("Conditional path matched", path_index=index)
            steps = config_value(path, "path_steps", "pathSteps", default=[])
            failed, results = await self._run_path(steps, context)
            if failed:
                return failed
            return StepResult.ok({
                "matched_condition": details,
                "path_index": index,
                "path_executed": True,
                "path_results": results,
            })

        default_path = config_value(config, "default_path", "defaultPath") or {}
        if default_path.get("steps"):
            logger.info("No conditional path matched, running default path")
            failed, results = await self._run_path(default_path["steps"], context)
            if failed:
                return failed
            return StepResult.ok({
                "matched_condition": None,
                "default_path_executed": True,
                "path_results": results,
            })

        return StepResult.ok({"matched_condition": None, "no_path_executed": True})

    async def _run_path(self, steps: List[dict], context: ExecutionContext):
        results = list(context.get("path_results") or [])
        for nested in steps:
            context.set("path_results", results)
            result = await self.services.execute_step(nested, context)
            if not result.success:
                return result, results
            if result.output:
                results.append(result.output)
                context.set("last_output", result.output)
        context.set("path_results", results)
        return None, results


TRANSFORM_STEP_TYPES = {
    "data_transformation": DataTransformationHandler,
    "condition": ConditionHandler,
    "conditional": ConditionalPathsHandler,
    "conditional_paths": ConditionalPathsHandler,
    "for_each": ForEachHandler,
}
