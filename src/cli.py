"""Offline tooling for workflow definition files (YAML or JSON)."""

import argparse
import logging
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from models.definition import WorkflowDefinition
from models.graph import WorkflowGraph
from services.graph_validator import GraphValidationError, GraphValidator

logger = logging.getLogger(__name__)


def load_definition(path: str) -> WorkflowDefinition:
    """Read a definition file. YAML is a superset of JSON so both load."""
    text = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return WorkflowDefinition.model_validate(data)


def validate_files(paths: list[str], validator: GraphValidator | None = None) -> int:
    """Validate each file, print one line per file, return the number of failures."""
    validator = validator or GraphValidator()
    failures = 0
    for path in paths:
        try:
            definition = load_definition(path)
            graph = validator.validate(definition)
        except (OSError, yaml.YAMLError, ValidationError, ValueError, GraphValidationError) as e:
            print(f"FAIL {path}: {e}")
            failures += 1
            continue
        print(
            f"OK   {path}: {definition.workflow_name} "
            f"({len(graph.tasks)} tasks, {len(definition.dependencies)} dependencies, "
            f"longest path {graph.longest_path_length()})"
        )
    return failures


def format_plan(definition: WorkflowDefinition, graph: WorkflowGraph) -> list[str]:
    """One line per task in topological order with its inbound edges."""
    lines = []
    for task_id in graph.topological_order():
        task = graph.tasks[task_id]
        inbound = ", ".join(
            f"{dep.upstream_task_id}[{dep.kind.value}"
            + (f" if {dep.condition}" if dep.condition else "")
            + "]"
            for dep in graph.inbound[task_id]
        )
        policy = definition.retry_policy_for(task)
        sla = definition.sla_config_for(task)
        line = (
            f"{task_id} ({task.task_type.value}, priority {task.priority}, "
            f"retries {policy.max_retries}"
        )
        if sla is not None:
            line += f", sla {sla.max_execution_seconds:g}s"
        line += ")"
        if inbound:
            line += f" <- {inbound}"
        lines.append(line)
    return lines


def main(argv: list[str] | None = None) -> int:
    """Validate or show the execution plan of definition files."""
    parser = argparse.ArgumentParser(description="Workflow definition tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate definition files")
    validate_parser.add_argument("files", nargs="+", help="YAML or JSON definition files")

    plan_parser = subparsers.add_parser("plan", help="Print tasks in dependency order")
    plan_parser.add_argument("file", help="YAML or JSON definition file")

    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="warning",
        help="Log level (default: warning)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    if args.command == "validate":
        return 1 if validate_files(args.files) else 0

    try:
        definition = load_definition(args.file)
        graph = GraphValidator().validate(definition)
    except (OSError, yaml.YAMLError, ValidationError, ValueError, GraphValidationError) as e:
        print(f"FAIL {args.file}: {e}")
        return 1
    for line in format_plan(definition, graph):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
