from __future__ import annotations

from leave_reconciliation.domain.constraints import MemberMatchConfig
from leave_reconciliation.domain.models import MatchStatus, Member
from leave_reconciliation.services.member_matching import (
    find_members_by_name,
    has_doubled_letter_typo,
    is_name_variant,
    normalize_name,
    phonetic_key,
    resolve_member,
    score_member,
)


MATCH_CONFIG = MemberMatchConfig(
    min_confidence=30,
    common_name_min_confidence=40,
    high_confidence=90,
    top_confidence=80,
    lead_margin=20,
)

ROSTER = (
    Member(member_id="m-1", first_name="Michael", last_name="Smith", pin_number=1001),
    Member(member_id="m-2", first_name="Wilbur", last_name="Wright", pin_number=1002),
    Member(member_id="m-3", first_name="Chris", last_name="Brown", pin_number=1003),
    Member(member_id="m-4", first_name="Chris", last_name="Brown", pin_number=1004),
)


def _resolve(first: str, last: str, pin=None):
    return resolve_member(
        first_name=first,
        last_name=last,
        pin_number=pin,
        roster=ROSTER,
        config=MATCH_CONFIG,
    )


def test_normalize_name_strips_punctuation_and_case():
    assert normalize_name(" O'Brien ") == "obrien"
    assert normalize_name(None) == ""


def test_name_variants_are_symmetric_and_shared():
    assert is_name_variant("mike", "michael")
    assert is_name_variant("michael", "mike")
    assert is_name_variant("mike", "mick")
    assert not is_name_variant("mike", "robert")


def test_phonetic_key_collapses_spelling_differences():
    assert phonetic_key("Philips") == phonetic_key("Fillips")


def test_doubled_letter_typo_detected():
    assert has_doubled_letter_typo("willbur", "wilbur")
    assert not has_doubled_letter_typo("wilbur", "wright")


def test_pin_match_wins_over_name():
    outcome = _resolve("Someone", "Else", pin=1002)
    assert outcome.status == MatchStatus.MATCHED
    assert outcome.member.member_id == "m-2"
    assert outcome.confidence == 100


def test_unknown_pin_falls_back_to_name():
    outcome = _resolve("Michael", "Smith", pin=9999)
    assert outcome.status == MatchStatus.MATCHED
    assert outcome.member.member_id == "m-1"


def test_nickname_matches_with_full_confidence():
    assert score_member("Mike", "Smith", ROSTER[0]) == 100
    outcome = _resolve("Mike", "Smith")
    assert outcome.status == MatchStatus.MATCHED
    assert outcome.member.member_id == "m-1"


def test_first_name_typo_with_exact_last_name_matches():
    assert score_member("Willbur", "Wright", ROSTER[1]) == 95
    outcome = _resolve("Willbur", "Wright")
    assert outcome.status == MatchStatus.MATCHED
    assert outcome.member.member_id == "m-2"


def test_identical_names_are_ambiguous():
    outcome = _resolve("Chris", "Brown")
    assert outcome.status == MatchStatus.UNMATCHED
    assert outcome.member is None
    assert {member.member_id for member in outcome.possible_matches} == {"m-3", "m-4"}


def test_unknown_name_is_unmatched_without_suggestions():
    outcome = _resolve("Zed", "Quux")
    assert outcome.status == MatchStatus.UNMATCHED
    assert outcome.possible_matches == ()


def test_find_members_returns_best_first():
    matches = find_members_by_name("Mike", "Smith", ROSTER, MATCH_CONFIG)
    assert matches
    assert matches[0].member.member_id == "m-1"
    assert all(
        earlier.confidence >= later.confidence for earlier, later in zip(matches, matches[1:])
    )


def test_blank_name_finds_nothing():
    assert find_members_by_name("", "", ROSTER, MATCH_CONFIG) == []
