"""Domain-level validation rules for reconciliation runs."""

from __future__ import annotations

from dataclasses import dataclass

from leave_reconciliation.domain.models import PriorityPolicy


@dataclass(frozen=True)
class MemberMatchConfig:
    min_confidence: int
    common_name_min_confidence: int
    high_confidence: int
    top_confidence: int
    lead_margin: int


@dataclass(frozen=True)
class ReconciliationConfig:
    priority_policy: PriorityPolicy
    member_match: MemberMatchConfig
    all_or_nothing: bool
    import_date_formats: tuple[str, ...]
    import_source_tag: str


def validate_member_match_config(config: MemberMatchConfig) -> None:
    for name in (
        "min_confidence",
        "common_name_min_confidence",
        "high_confidence",
        "top_confidence",
        "lead_margin",
    ):
        value = getattr(config, name)
        if not 0 <= value <= 100:
            raise ValueError(f"{name} must be between 0 and 100")
    if config.min_confidence > config.common_name_min_confidence:
        raise ValueError("common_name_min_confidence must be >= min_confidence")
    if config.top_confidence > config.high_confidence:
        raise ValueError("top_confidence must be <= high_confidence")


def validate_reconciliation_config(config: ReconciliationConfig) -> None:
    if not isinstance(config.priority_policy, PriorityPolicy):
        raise ValueError("priority_policy must be a PriorityPolicy")
    validate_member_match_config(config.member_match)
    if not config.import_date_formats:
        raise ValueError("import_date_formats must not be empty")
    if not config.import_source_tag.strip():
        raise ValueError("import_source_tag must be non-empty")


def build_reconciliation_config(settings, **overrides) -> ReconciliationConfig:
    """Derive a validated run config from settings plus per-run overrides."""
    try:
        policy = PriorityPolicy(overrides.pop("priority_policy", settings.default_priority_policy))
    except ValueError as exc:
        raise ValueError(f"unknown priority policy: {exc}") from exc
    config = ReconciliationConfig(
        priority_policy=policy,
        member_match=MemberMatchConfig(
            min_confidence=settings.member_match_min_confidence,
            common_name_min_confidence=settings.member_match_common_name_min_confidence,
            high_confidence=settings.member_match_high_confidence,
            top_confidence=settings.member_match_top_confidence,
            lead_margin=settings.member_match_lead_margin,
        ),
        all_or_nothing=overrides.pop("all_or_nothing", settings.commit_all_or_nothing),
        import_date_formats=settings.import_date_formats,
        import_source_tag=settings.import_source_tag,
    )
    if overrides:
        raise ValueError(f"unknown config overrides: {sorted(overrides)}")
    validate_reconciliation_config(config)
    return config
