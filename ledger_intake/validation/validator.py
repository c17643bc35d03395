"""
Two-Stage Action Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- The verb must belong to the closed taxonomy
- Required parameters for that verb must be present
- Amounts must normalize to finite, non-negative numbers
- Dates must parse (and are mandatory for spreadsheet rows)
- This catches LLM formatting drift and malformed output

STAGE 2 - GROUNDING FIT:
- Account and tag names are matched against the grounding snapshot
- Defaulted and unmatched fields discount the schema-fit score
- This measures how much of the action was inferred rather than read

WHY TWO STAGES:
1. A schema failure means there is nothing to stage but raw text
2. A grounding miss is not an error, only lower confidence
3. Confidence = min(extraction confidence, schema fit), so an LLM that
   sounds sure about an action it had to guess never auto-approves

IMPORTANT: Validation NEVER raises for bad input. It returns a result with
action=None and confidence 0 so the raw input can be staged for manual entry.
"""

from datetime import date, datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError as SchemaError

from ledger_intake.config.settings import LedgerSettings
from ledger_intake.models.action import (
    ACCOUNT_FIELDS,
    ACTION_MODELS,
    ActionRequest,
    ActionSource,
    ActionVerb,
    ValidationIssue,
    ValidationResult,
    known_params,
    required_params,
)
from ledger_intake.validation.normalize import (
    AmountError,
    DateParseError,
    parse_amount,
    parse_date,
)


# Each defaulted or ungrounded field costs this much schema fit
SCHEMA_FIT_PENALTY = 0.1

_EMPTY_VALUES = {"", "-", "none", "null", "n/a", "na", "unknown"}

_VERB_KEYS = ("action", "verb")


class ActionValidationError(Exception):
    """
    An action cannot be used as-is.

    Raised at the review boundary (e.g. approving a record with no action),
    never by the validator itself.
    """

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = issues or []


class ActionValidator:
    """
    Validates extracted parameters against the action taxonomy.

    Stage 1: Schema validation (verb, required params, amounts, dates)
    Stage 2: Grounding fit (accounts/tags vs the snapshot)
    """

    def __init__(
        self,
        settings: LedgerSettings,
        today: Optional[Callable[[], date]] = None,
    ):
        """
        Initialize validator.

        Args:
            settings: Supplies the default currency and the timezone that
                      "today" is computed in.
            today: Clock override for tests.
        """
        self._settings = settings
        self._today = today or (lambda: datetime.now(settings.tz).date())

    def validate(self, request: ActionRequest) -> ValidationResult:
        """Validate the output of one extraction call."""
        if request.params is None:
            return ValidationResult(issues=[ValidationIssue(
                field="extraction",
                issue_type="unparsable",
                message=request.failure_reason or "LLM output could not be parsed",
                severity="error",
                suggested_fix="Enter the action manually from the raw input",
            )])

        return self.validate_params(
            request.params,
            source=request.source,
            extraction_confidence=request.confidence,
            accounts=request.accounts,
            tags=request.tags,
        )

    def validate_params(
        self,
        params: dict[str, Any],
        source: ActionSource,
        extraction_confidence: float = 1.0,
        accounts: Optional[list[str]] = None,
        tags: Optional[list[str]] = None,
    ) -> ValidationResult:
        """
        Run the two-stage pipeline over raw key/value parameters.

        Also used for manual entry, where extraction confidence is 1.0.
        """
        issues: list[ValidationIssue] = []
        inferred: list[str] = []
        cleaned = self._clean(params)

        # Stage 1: Schema validation
        verb = self._resolve_verb(cleaned, issues)
        if verb is None:
            return ValidationResult(issues=issues)

        fields = self._validate_schema(verb, cleaned, source, issues, inferred)
        if any(issue.severity == "error" for issue in issues):
            return ValidationResult(issues=issues, inferred_fields=inferred)

        # Stage 2: Grounding fit
        self._validate_grounding(fields, accounts or [], tags or [], inferred)

        try:
            action = ACTION_MODELS[verb].model_validate(fields)
        except SchemaError as e:
            for error in e.errors():
                issues.append(ValidationIssue(
                    field=".".join(str(part) for part in error["loc"]) or verb.value,
                    issue_type="invalid_value",
                    message=error["msg"],
                    severity="error",
                ))
            return ValidationResult(issues=issues, inferred_fields=inferred)

        schema_fit = max(0.0, round(1.0 - SCHEMA_FIT_PENALTY * len(inferred), 4))
        return ValidationResult(
            action=action,
            confidence=min(extraction_confidence, schema_fit),
            schema_fit=schema_fit,
            inferred_fields=inferred,
            issues=issues,
        )

    @staticmethod
    def _clean(params: dict[str, Any]) -> dict[str, Any]:
        """Drop placeholder values the LLM writes for 'nothing'."""
        cleaned = {}
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip().lower() in _EMPTY_VALUES:
                continue
            cleaned[key] = value.strip() if isinstance(value, str) else value
        return cleaned

    @staticmethod
    def _resolve_verb(
        params: dict[str, Any],
        issues: list[ValidationIssue],
    ) -> Optional[ActionVerb]:
        raw = next((params[key] for key in _VERB_KEYS if key in params), None)
        if raw is None:
            issues.append(ValidationIssue(
                field="action",
                issue_type="missing",
                message="No action verb in the extracted table",
                severity="error",
            ))
            return None

        name = str(raw).strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return ActionVerb(name)
        except ValueError:
            issues.append(ValidationIssue(
                field="action",
                issue_type="unknown_verb",
                message=f"Unknown action '{raw}'",
                severity="error",
                suggested_fix=f"Use one of: {', '.join(v.value for v in ActionVerb)}",
            ))
            return None

    def _validate_schema(
        self,
        verb: ActionVerb,
        params: dict[str, Any],
        source: ActionSource,
        issues: list[ValidationIssue],
        inferred: list[str],
    ) -> dict[str, Any]:
        """
        Stage 1: build the typed field dict for the verb's model.

        Appends error issues instead of raising.
        """
        fields: dict[str, Any] = {"verb": verb.value}

        for name in required_params(verb):
            if name == "verb":
                continue
            if name not in params:
                issues.append(ValidationIssue(
                    field=name,
                    issue_type="missing",
                    message=f"'{verb.value}' requires '{name}'",
                    severity="error",
                ))

        # Amount (and a currency hidden in it, e.g. "12 usd")
        detected_currency = None
        if "amount" in params:
            try:
                fields["amount"], detected_currency = parse_amount(params["amount"])
            except AmountError as e:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_amount",
                    message=str(e),
                    severity="error",
                    suggested_fix="Write the amount as a number, e.g. 120000 or 120k",
                ))

        if "fee" in params:
            try:
                fields["fee"], _ = parse_amount(params["fee"])
            except AmountError as e:
                issues.append(ValidationIssue(
                    field="fee",
                    issue_type="invalid_amount",
                    message=str(e),
                    severity="error",
                ))

        # Currency
        if "currency" in params:
            fields["currency"] = str(params["currency"]).upper()
        elif detected_currency:
            fields["currency"] = detected_currency
            inferred.append("currency")
        elif verb in (ActionVerb.STAKE, ActionVerb.UNSTAKE) and "asset" in params:
            fields["currency"] = str(params["asset"]).upper()
        else:
            fields["currency"] = self._settings.default_currency
            inferred.append("currency")

        # Date
        if "date" in params:
            try:
                fields["date"] = parse_date(params["date"])
            except DateParseError as e:
                issues.append(ValidationIssue(
                    field="date",
                    issue_type="invalid_date",
                    message=str(e),
                    severity="error",
                    suggested_fix="Use YYYY-MM-DD or DD/MM/YYYY",
                ))
        elif source is ActionSource.SPREADSHEET_ROW:
            issues.append(ValidationIssue(
                field="date",
                issue_type="missing",
                message="Spreadsheet rows must carry a date",
                severity="error",
            ))
        else:
            fields["date"] = self._today()
            inferred.append("date")

        # Remaining text parameters the verb declares
        for name in known_params(verb):
            if name in fields or name not in params:
                continue
            fields[name] = str(params[name])

        return fields

    @staticmethod
    def _validate_grounding(
        fields: dict[str, Any],
        accounts: list[str],
        tags: list[str],
        inferred: list[str],
    ) -> None:
        """
        Stage 2: match names against the grounding snapshot.

        Matches are rewritten to the canonical spelling. Misses are kept
        as written but count as inferred.
        """
        if accounts:
            canonical = {name.lower(): name for name in accounts}
            for name in ACCOUNT_FIELDS:
                value = fields.get(name)
                if value is None:
                    continue
                if value.lower() in canonical:
                    fields[name] = canonical[value.lower()]
                else:
                    inferred.append(name)

        if tags and fields.get("tag") is not None:
            canonical_tags = {tag.lower(): tag for tag in tags}
            if fields["tag"].lower() in canonical_tags:
                fields["tag"] = canonical_tags[fields["tag"].lower()]
            else:
                inferred.append("tag")
