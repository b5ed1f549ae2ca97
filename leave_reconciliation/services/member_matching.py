"""Member identity resolution against the eligible roster.

Import rows identify people by a pin when the source has one and by a typed
name otherwise. Names arrive with nicknames (Mike for Michael), doubled-letter
typos (Willbur for Wilbur) and phonetic misspellings, so name lookup scores
every roster member on a 0-100 confidence scale and the caller decides whether
the best score is unambiguous enough to accept.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, Optional, Sequence

from leave_reconciliation.domain.constraints import MemberMatchConfig
from leave_reconciliation.domain.models import MatchStatus, Member
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)


NAME_VARIANTS: dict[str, frozenset[str]] = {
    "michael": frozenset({"mike", "mick", "mickey"}),
    "robert": frozenset({"rob", "bob", "bobby"}),
    "william": frozenset({"will", "bill", "billy"}),
    "james": frozenset({"jim", "jimmy"}),
    "thomas": frozenset({"tom", "tommy"}),
    "joseph": frozenset({"joe", "joey"}),
    "daniel": frozenset({"dan", "danny"}),
    "richard": frozenset({"rick", "ricky", "dick"}),
    "nicholas": frozenset({"nick", "nicky"}),
    "anthony": frozenset({"tony"}),
    "donald": frozenset({"don", "donnie"}),
    "edward": frozenset({"ed", "eddie", "ned"}),
    "christopher": frozenset({"chris"}),
    "matthew": frozenset({"matt"}),
    "steven": frozenset({"steve"}),
    "alexander": frozenset({"alex"}),
    "david": frozenset({"dave"}),
    "jonathan": frozenset({"jon", "john"}),
    "samuel": frozenset({"sam"}),
    "patrick": frozenset({"pat"}),
    "timothy": frozenset({"tim"}),
    "kenneth": frozenset({"ken", "kenny"}),
    "lawrence": frozenset({"larry"}),
    "charles": frozenset({"chuck", "charlie"}),
    "benjamin": frozenset({"ben"}),
    "nathan": frozenset({"nate", "nat"}),
}

# Common first names get stricter last-name requirements.
COMMON_FIRST_NAMES = frozenset(
    {
        "mike", "michael", "john", "johnny", "dave", "david", "bob", "robert",
        "bill", "william", "jim", "james", "tom", "thomas", "joe", "joseph",
        "dan", "daniel", "steve", "steven", "alex", "alexander", "matt",
        "matthew", "chris", "christopher", "pat", "patrick", "nick", "nicholas",
        "sam", "samuel", "tim", "timothy", "rick", "richard", "tony", "anthony",
        "don", "donald", "nate", "nathan",
    }
)

_MISSPELLING_PAIRS = (
    ("c", "k"), ("s", "c"), ("y", "i"), ("f", "ph"), ("n", "nn"), ("l", "ll"),
    ("m", "mm"), ("t", "tt"), ("i", "e"), ("a", "e"), ("a", "o"), ("ks", "x"),
    ("z", "s"), ("j", "g"), ("w", "wh"),
)

_PHONETIC_RULES = (
    (r"ph", "f"),
    (r"ck", "k"),
    (r"([bcdfghjklmnpqrstvwxz])\1+", r"\1"),
    (r"([aeiou])[aeiou]+", r"\1"),
    (r"kn|gn|pn|wr", "n"),
    (r"wh", "w"),
    (r"x", "ks"),
    (r"mb$", "m"),
    (r"ght", "t"),
    (r"dg|tch", "j"),
    (r"sch|sh|ch", "S"),
    (r"th", "T"),
    (r"[aeiouy]", "A"),
)


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"[^a-z0-9]", "", value.strip().lower())


def phonetic_key(value: str) -> str:
    """Collapse spelling differences that sound alike into one key."""
    key = re.sub(r"[^a-z]", "", value.lower())
    for pattern, replacement in _PHONETIC_RULES:
        key = re.sub(pattern, replacement, key)
    return key


def string_similarity(left: str, right: str) -> float:
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def phonetic_similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    left_key, right_key = phonetic_key(left), phonetic_key(right)
    if left_key == right_key:
        return 1.0
    return string_similarity(left_key, right_key)


def is_name_variant(left: str, right: str) -> bool:
    if left == right:
        return True
    for base, variants in NAME_VARIANTS.items():
        if left == base and right in variants:
            return True
        if right == base and left in variants:
            return True
        if left in variants and right in variants:
            return True
    return False


def has_doubled_letter_typo(left: str, right: str) -> bool:
    return left.replace("ll", "l", 1) == right or right.replace("ll", "l", 1) == left


def is_common_misspelling(left: str, right: str) -> bool:
    if has_doubled_letter_typo(left, right):
        return True
    for a, b in _MISSPELLING_PAIRS:
        if (
            left.replace(a, b, 1) == right
            or right.replace(a, b, 1) == left
            or left.replace(b, a, 1) == right
            or right.replace(b, a, 1) == left
        ):
            return True
    if len(left) == len(right):
        for index in range(len(left) - 1):
            swapped = left[:index] + left[index + 1] + left[index] + left[index + 2:]
            if swapped == right:
                return True
    return False


@dataclass(frozen=True)
class MemberMatch:
    member: Member
    confidence: int


@dataclass(frozen=True)
class MatchOutcome:
    status: MatchStatus
    member: Optional[Member] = None
    confidence: int = 0
    possible_matches: tuple[Member, ...] = ()


def score_member(first_name: str, last_name: str, member: Member) -> int:
    """Return a 0-100 confidence that the typed name refers to `member`."""
    first = normalize_name(first_name)
    last = normalize_name(last_name)
    member_first = normalize_name(member.first_name)
    member_last = normalize_name(member.last_name)
    if not member_first or not member_last:
        return 0

    if last and last == member_last and (first == member_first or is_name_variant(first, member_first)):
        return 100

    if first and last and member_last == last:
        if string_similarity(first, member_first) > 0.5 or is_name_variant(first, member_first):
            return 95

    first_matches = bool(first) and (
        is_name_variant(first, member_first) or string_similarity(first, member_first) > 0.6
    )
    if last and first_matches:
        if has_doubled_letter_typo(last, member_last) and is_name_variant(first, member_first):
            return 98
        last_phonetic = phonetic_similarity(last, member_last)
        if last_phonetic > 0.9 or is_common_misspelling(last, member_last):
            return 92
        if last_phonetic > 0.8:
            return 85

    is_common = first in COMMON_FIRST_NAMES
    first_weight, last_weight = (0.2, 0.8) if is_common else (0.3, 0.7)

    first_confidence = string_similarity(first, member_first)
    last_confidence = string_similarity(last, member_last)

    if last:
        last_confidence = max(last_confidence, phonetic_similarity(last, member_last) * 0.9)
        if is_common_misspelling(last, member_last):
            last_confidence = max(last_confidence, 0.85)
        if has_doubled_letter_typo(last, member_last):
            last_confidence = max(last_confidence, 0.95)
        if member_last.startswith(last) or last.startswith(member_last):
            last_confidence = max(last_confidence, 0.9)

    if first:
        if member_first.startswith(first) or first.startswith(member_first):
            first_confidence = max(first_confidence, 0.8)
        if is_name_variant(first, member_first):
            first_confidence = max(first_confidence, 0.9)
        if is_common_misspelling(first, member_first):
            first_confidence = max(first_confidence, 0.85)

    combined = first_confidence * first_weight + last_confidence * last_weight
    if first and last:
        minimum = 0.6 if is_common else 0.4
        if last_confidence < minimum:
            combined *= last_confidence / minimum
    return int(round(combined * 100))


def find_members_by_name(
    first_name: str,
    last_name: str,
    roster: Iterable[Member],
    config: MemberMatchConfig,
) -> list[MemberMatch]:
    """Score the roster and return plausible matches, best first."""
    if not normalize_name(first_name) and not normalize_name(last_name):
        return []
    threshold = (
        config.common_name_min_confidence
        if normalize_name(first_name) in COMMON_FIRST_NAMES
        else config.min_confidence
    )
    matches = [
        MemberMatch(member=member, confidence=score_member(first_name, last_name, member))
        for member in roster
    ]
    return sorted(
        (match for match in matches if match.confidence > threshold),
        key=lambda match: (-match.confidence, match.member.member_id),
    )


def resolve_member(
    *,
    first_name: str,
    last_name: str,
    pin_number: Optional[int],
    roster: Sequence[Member],
    config: MemberMatchConfig,
) -> MatchOutcome:
    """Resolve one import row to a roster member, or report it unmatched."""
    if pin_number is not None:
        by_pin = [member for member in roster if member.pin_number == pin_number]
        if len(by_pin) == 1:
            return MatchOutcome(status=MatchStatus.MATCHED, member=by_pin[0], confidence=100)
        logger.debug("Pin lookup missed | pin=%s | falling back to name", pin_number)

    matches = find_members_by_name(first_name, last_name, roster, config)
    if not matches:
        logger.info("Unmatched import name | name=%s %s", first_name, last_name)
        return MatchOutcome(status=MatchStatus.UNMATCHED)

    high = [match for match in matches if match.confidence >= config.high_confidence]
    if len(high) == 1:
        return MatchOutcome(
            status=MatchStatus.MATCHED,
            member=high[0].member,
            confidence=high[0].confidence,
        )
    if len(matches) == 1:
        return MatchOutcome(
            status=MatchStatus.MATCHED,
            member=matches[0].member,
            confidence=matches[0].confidence,
        )

    top, second = matches[0], matches[1]
    if (
        top.confidence >= config.top_confidence
        and top.confidence - second.confidence > config.lead_margin
    ):
        return MatchOutcome(status=MatchStatus.MATCHED, member=top.member, confidence=top.confidence)

    logger.info(
        "Ambiguous import name | name=%s %s | candidates=%s",
        first_name,
        last_name,
        len(matches),
    )
    return MatchOutcome(
        status=MatchStatus.UNMATCHED,
        confidence=top.confidence,
        possible_matches=tuple(match.member for match in matches),
    )
