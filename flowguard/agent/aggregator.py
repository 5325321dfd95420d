"""Agent that aggregates the outputs of several upstream sources."""

from __future__ import annotations

import ast
import json
import logging
import operator
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..contracts import utcnow
from ..errors import ValidationError
from .base import BaseAgent

logger = logging.getLogger(__name__)

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPERATORS = {ast.UAdd: operator.pos, ast.USub: operator.neg}


def evaluate_formula(formula: str, variables: Mapping[str, Any]) -> float:
    """Evaluate an arithmetic formula without ``eval``.

    Only numbers, variable names bound to numbers, parentheses and
    ``+ - * /`` are accepted; anything else raises ``ValidationError``.
    """
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        raise ValidationError(f"Invalid formula '{formula}': {e.msg}") from e

    def _eval(node: ast.AST) -> float:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            if isinstance(node.value, bool):
                raise ValidationError(f"Unsupported literal in formula '{formula}'")
            return float(node.value)
        if isinstance(node, ast.Name):
            value = variables.get(node.id)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(
                    f"Variable '{node.id}' in formula '{formula}' is not numeric"
                )
            return float(value)
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            return _BINARY_OPERATORS[type(node.op)](_eval(node.left), _eval(node.right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
            return _UNARY_OPERATORS[type(node.op)](_eval(node.operand))
        raise ValidationError(
            f"Formula '{formula}' contains unsupported syntax: {type(node).__name__}"
        )

    try:
        return _eval(tree)
    except ZeroDivisionError as e:
        raise ValidationError(f"Division by zero in formula '{formula}'") from e


class DataAggregatorAgent(BaseAgent):
    """Collect, normalize and sanity-check data from upstream agents."""

    agent_type = "data_aggregator"

    def __init__(self, config: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.sources: List[str] = list(self.config.get("sources") or [])
        self.output_format: str = self.config.get("output_format", "combined")
        self.formulas: Dict[str, str] = dict(self.config.get("formulas") or {})

    def get_capabilities(self) -> List[str]:
        return [
            "Data aggregation from multiple sources",
            "Input validation and normalization",
            "Duplicate detection and merging",
            "Confidence score calculation",
        ]

    # ------------------------------------------------------------------
    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        selected = {
            name: data
            for name, data in inputs.items()
            if not self.sources or name in self.sources
        }
        aggregated: Dict[str, Any] = {
            "sources": [],
            "combined_data": {},
            "metadata": {
                "aggregation_time": utcnow().isoformat(),
                "source_count": len(selected),
                "total_records": 0,
            },
        }

        for source_name, source_data in selected.items():
            processed = self.process_source(source_name, source_data)
            aggregated["sources"].append(processed)
            if self.output_format == "flat" and isinstance(processed["data"], dict):
                aggregated["combined_data"].update(processed["data"])
            else:
                aggregated["combined_data"][source_name] = processed["data"]
            aggregated["metadata"]["total_records"] += processed["record_count"] or 1

        formula_results: Dict[str, Optional[float]] = {}
        for name, formula in self.formulas.items():
            try:
                formula_results[name] = evaluate_formula(
                    formula, aggregated["combined_data"]
                )
            except ValidationError as e:
                logger.error(f"Formula {name} failed for agent {self.id}: {e}")
                formula_results[name] = None

        return {
            **aggregated,
            "validation": self.validate_aggregated_data(aggregated),
            "formula_results": formula_results,
        }

    def process_source(self, source_name: str, source_data: Any) -> Dict[str, Any]:
        data_type = self.detect_data_type(source_data)
        return {
            "name": source_name,
            "timestamp": utcnow().isoformat(),
            "data": self.normalize_data(source_data, data_type),
            "record_count": self.count_records(source_data),
            "data_type": data_type,
            "quality": self.assess_data_quality(source_data),
        }

    @staticmethod
    def count_records(data: Any) -> int:
        if isinstance(data, (list, dict)):
            return len(data)
        return 1

    @staticmethod
    def detect_data_type(data: Any) -> str:
        if data is None:
            return "null"
        if isinstance(data, bool):
            return "boolean"
        if isinstance(data, (int, float)):
            return "number"
        if isinstance(data, str):
            return "string"
        if isinstance(data, list):
            return "array"
        if isinstance(data, dict):
            if data.get("transcript"):
                return "transcript"
            if data.get("ocr_text"):
                return "ocr_result"
            if data.get("measurements"):
                return "inspection_data"
            return "object"
        return "unknown"

    # ------------------------------------------------------------------
    # Quality assessment
    def assess_data_quality(self, data: Any) -> Dict[str, float]:
        completeness = self.assess_completeness(data)
        accuracy = self.assess_accuracy(data)
        consistency = self.assess_consistency(data)
        return {
            "completeness": completeness,
            "accuracy": accuracy,
            "consistency": consistency,
            "overall": (completeness + accuracy + consistency) / 3,
        }

    @staticmethod
    def assess_completeness(data: Any) -> float:
        if not data:
            return 0.0
        if isinstance(data, dict):
            present = [v for v in data.values() if v is not None]
            return len(present) / len(data)
        return 1.0

    @staticmethod
    def assess_accuracy(data: Any) -> float:
        if isinstance(data, dict) and isinstance(data.get("confidence"), (int, float)):
            return min(1.0, max(0.0, float(data["confidence"])))
        return 0.8

    @staticmethod
    def assess_consistency(data: Any) -> float:
        if not isinstance(data, dict):
            return 1.0
        start, end = data.get("start_date"), data.get("end_date")
        if start and end:
            try:
                if datetime.fromisoformat(str(start)) > datetime.fromisoformat(str(end)):
                    return 0.0
            except ValueError:
                return 0.0
        return 1.0

    # ------------------------------------------------------------------
    # Normalization
    def normalize_data(self, data: Any, data_type: str) -> Any:
        if data_type == "transcript":
            return {
                "text": data.get("transcript") or data.get("text") or "",
                "confidence": data.get("confidence", 0.8),
                "language": data.get("language", "en"),
                "duration": data.get("duration"),
                "extracted_entities": data.get("extracted") or [],
            }
        if data_type == "ocr_result":
            return {
                "text": data.get("ocr_text") or data.get("text") or "",
                "confidence": data.get("confidence", 0.7),
                "bounding_boxes": data.get("boxes") or [],
                "extracted_fields": data.get("extracted") or {},
            }
        if data_type == "inspection_data":
            return {
                "measurements": data.get("measurements") or [],
                "observations": data.get("observations") or [],
                "standards": data.get("standards") or [],
                "timestamp": data.get("timestamp") or utcnow().isoformat(),
            }
        return data

    # ------------------------------------------------------------------
    def validate_aggregated_data(self, aggregated: Dict[str, Any]) -> Dict[str, Any]:
        sources = aggregated["sources"]
        errors: List[str] = []

        required = self.config.get("required_sources") or []
        present = {s["name"] for s in sources}
        missing = [name for name in required if name not in present]
        if missing:
            errors.append(f"Missing required sources: {', '.join(missing)}")

        average_quality = (
            sum(s["quality"]["overall"] for s in sources) / len(sources)
            if sources
            else 0.0
        )
        return {
            "is_valid": not errors,
            "errors": errors,
            "warnings": self.check_cross_source_consistency(sources),
            "summary": {
                "total_sources": len(sources),
                "average_quality": average_quality,
                "data_types": sorted({s["data_type"] for s in sources}),
            },
        }

    @staticmethod
    def check_cross_source_consistency(sources: List[Dict[str, Any]]) -> List[str]:
        warnings: List[str] = []

        timestamps = []
        for source in sources:
            data = source["data"]
            if isinstance(data, dict) and data.get("timestamp"):
                try:
                    timestamps.append(datetime.fromisoformat(str(data["timestamp"])))
                except ValueError:
                    continue
        if len(timestamps) > 1:
            try:
                spread = (max(timestamps) - min(timestamps)).total_seconds()
            except TypeError:
                spread = 0
            if spread > 3600:
                warnings.append("Large time difference between data sources")

        payloads = [json.dumps(s["data"], sort_keys=True, default=str) for s in sources]
        if len(set(payloads)) < len(payloads):
            warnings.append("Potential duplicate data detected across sources")

        return warnings

    def calculate_confidence(self, result: Any, inputs: Mapping[str, Any]) -> float:
        if not result["validation"]["is_valid"]:
            return 0.3
        sources = result["sources"]
        average_quality = (
            sum(s["quality"]["overall"] for s in sources) / len(sources)
            if sources
            else 0.5
        )
        source_factor = min(1.0, len(sources) / 3)
        return (average_quality + source_factor) / 2
