"""Error types raised by the loader, model fitting, and data partitioning."""

from __future__ import annotations

from typing import Iterable


class SchemaError(ValueError):
    """An expected input column is absent or holds values of the wrong semantic type."""

    def __init__(self, column: str, message: str):
        self.column = column
        super().__init__(f"{column}: {message}")


class ModelFitError(RuntimeError):
    """A logistic model could not be estimated; ``terms`` names the offending terms."""

    def __init__(self, label: str, reason: str, terms: Iterable[str] = ()):
        self.label = label
        self.reason = reason
        self.terms = list(terms)
        detail = f" (terms: {', '.join(self.terms)})" if self.terms else ""
        super().__init__(f"{label}: {reason}{detail}")


class PartitionError(ValueError):
    """A stratified split or CV fold layout cannot preserve the outcome classes."""

    def __init__(self, message: str, counts: dict | None = None):
        self.counts = dict(counts or {})
        detail = f" observed={self.counts}" if self.counts else ""
        super().__init__(f"{message}{detail}")
