"""
Two-Stage Import Validation

DESIGN DECISION: An imported snapshot replaces ALL local data, so it is
validated completely before anything is touched.

STAGE 1 - SCHEMA VALIDATION:
- The text is JSON and the top level is an object
- transactions, budgets and settings are present with the right shape
- Every record passes the model's field validation

STAGE 2 - SEMANTIC VALIDATION:
- Transaction ids are unique
- Transactions dated in the future (warning)
- Budgets for categories that are not known expense categories (warning)
- Missing categories, which means defaults will be kept (info)

Stage 2 only runs when stage 1 passed. Warnings never block an import.
"""

import json
from datetime import date
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from budget_sync.models.budget import ExportSnapshot
from budget_sync.models.validation import ValidationIssue, ValidationResult


logger = structlog.get_logger(__name__)

REQUIRED_SECTIONS = {
    "transactions": list,
    "budgets": dict,
    "settings": dict,
}


class SnapshotValidationError(Exception):
    """An import was rejected. Carries the full validation result."""

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = [i.message for i in result.issues if i.severity == "error"]
        super().__init__("Invalid snapshot: " + "; ".join(messages))


class SnapshotValidator:
    """
    Validates export files before they are imported.

    Stage 1: Schema validation
    Stage 2: Semantic validation
    """

    def __init__(self, today: Optional[date] = None):
        self._today = today

    def _validate_schema(
        self,
        data: Any,
    ) -> tuple[Optional[ExportSnapshot], list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (snapshot or None, list_of_issues)
        """
        issues = []

        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except ValueError as e:
                issues.append(ValidationIssue(
                    field="$",
                    issue_type="invalid_json",
                    message=f"File is not valid JSON: {e}",
                    severity="error",
                ))
                return None, issues

        if not isinstance(data, dict):
            issues.append(ValidationIssue(
                field="$",
                issue_type="invalid_format",
                message="Snapshot must be a JSON object",
                severity="error",
            ))
            return None, issues

        for section, expected in REQUIRED_SECTIONS.items():
            if section not in data:
                issues.append(ValidationIssue(
                    field=section,
                    issue_type="missing",
                    message=f"Missing required section '{section}'",
                    severity="error",
                ))
            elif not isinstance(data[section], expected):
                issues.append(ValidationIssue(
                    field=section,
                    issue_type="invalid_format",
                    message=f"Section '{section}' must be a {'list' if expected is list else 'object'}",
                    severity="error",
                ))

        if issues:
            return None, issues

        try:
            snapshot = ExportSnapshot.model_validate(data)
        except ValidationError as e:
            for error in e.errors():
                issues.append(ValidationIssue(
                    field=".".join(str(part) for part in error["loc"]) or "$",
                    issue_type=error["type"],
                    message=error["msg"],
                    severity="error",
                ))
            return None, issues

        return snapshot, issues

    def _validate_semantic(self, snapshot: ExportSnapshot) -> list[ValidationIssue]:
        """
        Stage 2: Semantic validation.

        Checks:
        - Duplicate transaction ids
        - Future-dated transactions
        - Budgets outside the known expense categories
        """
        issues = []
        today = self._today or date.today()

        seen = set()
        for idx, transaction in enumerate(snapshot.transactions):
            if transaction.id in seen:
                issues.append(ValidationIssue(
                    field=f"transactions.{idx}.id",
                    issue_type="duplicate",
                    message=f"Duplicate transaction id '{transaction.id}'",
                    severity="error",
                ))
            seen.add(transaction.id)

            if transaction.date > today:
                issues.append(ValidationIssue(
                    field=f"transactions.{idx}.date",
                    issue_type="future_date",
                    message=f"Transaction '{transaction.id}' is dated in the future ({transaction.date})",
                    severity="warning",
                ))

        if snapshot.categories is None:
            issues.append(ValidationIssue(
                field="categories",
                issue_type="missing",
                message="No categories in file; current categories will be kept",
                severity="info",
            ))
        else:
            known = set(snapshot.categories.expense)
            for category in snapshot.budgets:
                if category not in known:
                    issues.append(ValidationIssue(
                        field=f"budgets.{category}",
                        issue_type="unknown_category",
                        message=f"Budget for unknown expense category '{category}'",
                        severity="warning",
                    ))

        return issues

    def validate(self, data: Union[str, bytes, dict]) -> ValidationResult:
        """Run both stages and report everything found."""
        snapshot, issues = self._validate_schema(data)
        schema_valid = snapshot is not None

        semantic_valid = False
        if schema_valid:
            semantic_issues = self._validate_semantic(snapshot)
            issues.extend(semantic_issues)
            semantic_valid = not any(i.severity == "error" for i in semantic_issues)

        result = ValidationResult(
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            issues=issues,
            snapshot=snapshot,
        )

        if not result.is_valid:
            logger.warning(
                "snapshot_rejected",
                error_count=result.error_count,
                issues=[i.model_dump() for i in issues],
            )
        return result

    def parse(self, data: Union[str, bytes, dict]) -> ExportSnapshot:
        """
        Validate and return the snapshot.

        Raises:
            SnapshotValidationError: If either stage found an error
        """
        result = self.validate(data)
        if not result.is_valid:
            raise SnapshotValidationError(result)
        return result.snapshot
