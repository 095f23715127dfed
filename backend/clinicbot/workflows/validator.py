# /clinicbot/workflows/validator.py

"""
Pure validation functions for step input.

This module provides deterministic, side-effect-free checks that run a
step's explicit validation rules against raw user input. Rules are evaluated
in order and the first failing rule's message is returned.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No AI calls
"""

from typing import Optional, Sequence, TypedDict

from rapidfuzz import fuzz, process

from clinicbot.models.flow import RuleKind, Step, StepOption, ValidationRule
from clinicbot.services.security_service import EnhancedSecurityService

# Minimum rapidfuzz score for a typed label to count as an option match
OPTION_MATCH_THRESHOLD = 85


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _fail(rule: ValidationRule, error_code: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": rule.message}


def match_option(raw_input: str, options: Sequence[StepOption]) -> Optional[StepOption]:
    """
    Resolves user input to one of the options: by value or id (exact), by
    1-based list number, by exact label, then by fuzzy label match.
    """
    if not options or raw_input is None:
        return None
    candidate = raw_input.strip()
    if not candidate:
        return None
    lowered = candidate.lower()

    for option in options:
        if lowered in (option.value.lower(), option.id.lower()):
            return option

    if candidate.isdigit():
        index = int(candidate) - 1
        if 0 <= index < len(options):
            return options[index]

    for option in options:
        if lowered == option.text.lower():
            return option

    labels = [option.text.lower() for option in options]
    best = process.extractOne(lowered, labels, scorer=fuzz.WRatio)
    if best and best[1] >= OPTION_MATCH_THRESHOLD:
        return options[best[2]]
    return None


def check_rule(rule: ValidationRule, raw_input: str, options: Sequence[StepOption] = ()) -> ValidationResult:
    """Evaluates a single rule against the input."""
    value = raw_input or ""

    if rule.kind == RuleKind.REQUIRED:
        if not value.strip():
            return _fail(rule, "REQUIRED")

    elif rule.kind == RuleKind.PHONE:
        if not EnhancedSecurityService.is_phone_shaped(value):
            return _fail(rule, "PHONE_FORMAT")

    elif rule.kind == RuleKind.CUSTOM:
        if rule.predicate is not None:
            try:
                accepted = bool(rule.predicate(value))
            except (TypeError, ValueError):
                accepted = False
            if not accepted:
                return _fail(rule, "CUSTOM")

    elif rule.kind == RuleKind.OPTION:
        if match_option(value, options) is None:
            return _fail(rule, "NOT_AN_OPTION")

    return _ok()


def validate_input(step: Step, raw_input: str, options: Sequence[StepOption] = ()) -> ValidationResult:
    """
    Runs all of a step's rules in order, short-circuiting on the first failure.

    Args:
        step: The step whose rules apply
        raw_input: The user's raw answer (or button payload)
        options: The option set rendered for this step (for OPTION rules)

    Returns:
        ValidationResult with is_valid=True if every rule passes
    """
    for rule in step.rules:
        result = check_rule(rule, raw_input, options)
        if not result["is_valid"]:
            return result
    return _ok()
