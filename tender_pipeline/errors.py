from __future__ import annotations

from typing import Any

_ERROR_MATRIX: dict[str, dict[str, Any]] = {
    "GUARD_BLOCKED": {
        "class": "admission",
        "retryable": True,
        "message": "blocked by guard conditions",
    },
    "WAITING_INPUT": {
        "class": "admission",
        "retryable": True,
        "message": "step is waiting for input",
    },
    "PIPELINE_RACE_CONFLICT": {
        "class": "concurrency",
        "retryable": False,
        "message": "job already running",
    },
    "STEP_EXECUTION_ERROR": {
        "class": "transient",
        "retryable": True,
        "message": "step execution failed",
    },
    "RETRIES_EXHAUSTED": {
        "class": "permanent",
        "retryable": False,
        "message": "max retries exceeded",
    },
    "PT_MISMATCH": {
        "class": "critical",
        "retryable": False,
        "message": "project total does not equal the sum of cost components",
    },
    "SIMULATION_INPUT_INVALID": {
        "class": "validation",
        "retryable": False,
        "message": "simulation input invalid",
    },
    "KIK_THRESHOLD_INVALID": {
        "class": "configuration",
        "retryable": False,
        "message": "ADT threshold must be positive",
    },
    "TENDER_NOT_FOUND": {
        "class": "transient",
        "retryable": True,
        "message": "tender not found",
    },
    "SIMULATION_NOT_FOUND": {
        "class": "transient",
        "retryable": True,
        "message": "simulation not found",
    },
    "LEDGER_ROW_IMMUTABLE": {
        "class": "business_rule",
        "retryable": False,
        "message": "completed ledger rows are immutable",
    },
    "PIPELINE_STEP_UNKNOWN": {
        "class": "programming",
        "retryable": False,
        "message": "unknown pipeline step",
    },
}


def classify_error_code(error_code: str) -> dict[str, Any]:
    known = _ERROR_MATRIX.get(error_code)
    if known is not None:
        return dict(known)
    return dict(_ERROR_MATRIX["STEP_EXECUTION_ERROR"])


class PipelineError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        classified = classify_error_code(code)
        self.code = code
        self.message = message
        self.error_class = error_class if error_class is not None else str(classified["class"])
        self.retryable = retryable if retryable is not None else bool(classified["retryable"])
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "class": self.error_class,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload
