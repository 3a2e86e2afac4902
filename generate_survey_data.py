#!/usr/bin/env python3
"""
Synthetic Survey Data-Tier Generator
=====================================================
Generates seeded, reproducible mock data for a multi-school wellbeing survey
programme, following the data as it moves through identifiability tiers:

- Trusted third parties (TTPs), schools and named student cohorts
- Identifiable login credentials (oversized pool, 1:1 assignment)
- Longitudinal PHQ-9 / GAD-7 item responses with autocorrelated flare-ups
- ID rewrite map (student id -> sequential UID) and relabelled responses
- On-demand aggregates with n / mean / 95% CI and small-cell suppression
- Declarative column schema for tabular consumers (pandas DataFrames)

Usage:
    python generate_survey_data.py
    python generate_survey_data.py --seed 20241201
    python generate_survey_data.py --group-by school,year_group --threshold 5
    python generate_survey_data.py --output all --output-dir ./data
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import math
import statistics
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import pandas as pd

__all__ = [
    "DeterministicRandom",
    "TrustedThirdParty",
    "School",
    "SurveyDefinition",
    "NamePool",
    "Student",
    "CredentialRecord",
    "StudentCredential",
    "RewriteMapEntry",
    "SurveyScore",
    "RawResponse",
    "RelabelledResponse",
    "SurveyStats",
    "AggregateRow",
    "WavePoint",
    "ColumnSpec",
    "SurveyDataset",
    "ElevationState",
    "DataTier",
    "InsufficientCredentialsError",
    "build_students",
    "build_credential_pool",
    "assign_credentials",
    "build_responses",
    "next_elevation_state",
    "build_rewrite_map",
    "relabel_responses",
    "aggregate_responses",
    "summarize_group",
    "compute_survey_stats",
    "sort_by_wave",
    "wave_trend",
    "build_response_columns",
    "responses_frame",
    "aggregates_frame",
    "generate",
]

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# ENUMS (str, Enum — JSON-serializable without .value)
# ──────────────────────────────────────────────────────────────────────────────

class ElevationState(str, Enum):
    """Latent per-student condition carried across waves."""
    NORMAL = "normal"
    ELEVATED = "elevated"


class DataTier(str, Enum):
    PID = "PID"
    PSEUDONYMOUS = "Pseudonymous"
    ANONYMOUS_REIDENTIFIABLE = "Anonymous (re-identifiable)"
    ANONYMOUS = "Anonymous (fully)"


# ──────────────────────────────────────────────────────────────────────────────
# CATALOGS & CONFIGURATION
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrustedThirdParty:
    id: str
    name: str


@dataclass(frozen=True)
class School:
    id: str
    name: str
    ttp_id: str


@dataclass(frozen=True)
class SurveyDefinition:
    id: str
    name: str
    items: int


@dataclass(frozen=True)
class NamePool:
    """TTP-specific first/last name lists used for student display names."""
    first: tuple[str, ...]
    last: tuple[str, ...]


TTPS: list[TrustedThirdParty] = [
    TrustedThirdParty("oxford-ttp", "Oxford Secure TTP"),
    TrustedThirdParty("shanghai-ttp", "Shanghai Harmony TTP"),
]

TTP_NAME_POOLS: dict[str, NamePool] = {
    "oxford-ttp": NamePool(
        first=(
            "Alice", "Benjamin", "Charlotte", "Daniel", "Eleanor", "Finn",
            "Grace", "Harriet", "Isabelle", "Jacob", "Lily", "Matthew",
            "Nora", "Oliver", "Penelope", "Quentin", "Rose", "Samuel",
            "Thomas", "Victoria",
        ),
        last=(
            "Anderson", "Bennett", "Carter", "Davies", "Evans", "Foster",
            "Green", "Hamilton", "Ingram", "Johnson", "Knight", "Lewis",
            "Morgan", "Nelson", "Owen", "Parker", "Quinn", "Roberts",
            "Stewart", "Turner",
        ),
    ),
    "shanghai-ttp": NamePool(
        first=(
            "An", "Bao", "Chun", "Daiyu", "Enlai", "Fang", "Guang", "Haoran",
            "Jiayi", "Kai", "Ling", "Ming", "Ning", "Peizhi", "Qiu", "Rong",
            "Shan", "Tao", "Wei", "Ying",
        ),
        last=(
            "Chen", "Deng", "Fang", "Gao", "Han", "Huang", "Jiang", "Li",
            "Liu", "Ma", "Peng", "Qian", "Sun", "Tang", "Wang", "Xu",
            "Yang", "Zeng", "Zhang", "Zhou",
        ),
    ),
}
FALLBACK_TTP_ID = "oxford-ttp"

SCHOOLS: list[School] = [
    School("oxford-high", "Oxford High", "oxford-ttp"),
    School("cherwell", "Cherwell School", "oxford-ttp"),
    School("magdalen", "Magdalen College School", "oxford-ttp"),
    School("pudong-high", "Pudong High School", "shanghai-ttp"),
    School("huangpu-academy", "Huangpu Academy", "shanghai-ttp"),
]

YEAR_GROUPS: list[str] = ["Year 9", "Year 10", "Year 11"]
WAVES: list[str] = ["Wave 1", "Wave 2", "Wave 3"]

# The first survey is the reference survey for suppression decisions
SURVEYS: list[SurveyDefinition] = [
    SurveyDefinition("phq9", "PHQ-9", 9),
    SurveyDefinition("gad7", "GAD-7", 7),
]

DEFAULT_SEED = 42
DEFAULT_SUPPRESSION_THRESHOLD = 5

COHORT_SIZE_MIN = 8
COHORT_SIZE_SPAN = 6            # cohort sizes 8..13
MAX_NAME_ATTEMPTS = 50
STUDENT_ID_START = 1000

CREDENTIAL_OVERSIZE_FACTOR = 1.25
CREDENTIAL_ID_LENGTH = 6
PASSWORD_PREFIX_LENGTH = 4
PASSWORD_SUFFIX_LENGTH = 8
BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

INITIAL_ELEVATION_RATE = 0.10
MISSING_RESPONSE_RATE = 0.05
WAVE_ELEVATION_RATE = 0.10
ELEVATION_RECOVERY_RATE = 0.50
ELEVATION_ONSET_RATE = 0.50
MAX_ITEM_SCORE = 3

UID_PREFIX = "UID-"
UID_WIDTH = 5
UNKNOWN_UID = "UNKNOWN"

Z_95 = 1.96

DATA_TIERS: dict[str, DataTier] = {
    "credentials": DataTier.PID,
    "student_credentials": DataTier.PID,
    "rewrite_map": DataTier.PSEUDONYMOUS,
    "responses": DataTier.PSEUDONYMOUS,
    "relabelled_responses": DataTier.ANONYMOUS_REIDENTIFIABLE,
    "dynamic_aggregates": DataTier.ANONYMOUS_REIDENTIFIABLE,
    "static_aggregates": DataTier.ANONYMOUS,
}

ENTITY_ACCESS: list[dict[str, Any]] = [
    {
        "entity": "Oxford University",
        "access": ["Aggregated data", "Cross-school comparisons", "Anonymised survey stats"],
        "category": DataTier.ANONYMOUS,
        "purpose": "Research and monitoring",
    },
    {
        "entity": "Trusted Third Party (TTP)",
        "access": ["ID rewrite maps", "Pseudonymous survey data", "Aggregation logic"],
        "category": DataTier.PSEUDONYMOUS,
        "purpose": "Linkage and safe release",
    },
    {
        "entity": "Schools",
        "access": ["Student credentials", "School-level surveys", "Operational reports"],
        "category": "PID and Pseudonymous",
        "purpose": "Local pastoral support",
    },
]


# ──────────────────────────────────────────────────────────────────────────────
# ERRORS
# ──────────────────────────────────────────────────────────────────────────────

class InsufficientCredentialsError(RuntimeError):
    """Credential pool for a school ran out before every student was served."""

    def __init__(self, student_id: str, school_id: str):
        self.student_id = student_id
        self.school_id = school_id
        super().__init__(
            f"Not enough credentials for student {student_id} in school {school_id}"
        )


# ──────────────────────────────────────────────────────────────────────────────
# DETERMINISTIC RANDOM SOURCE
# ──────────────────────────────────────────────────────────────────────────────

class DeterministicRandom:
    """
    Linear congruential float stream in [0, 1).

    state = (1664525 * state + 1013904223) mod 2**32, output = state / 2**32.
    Every generation run owns its own instance; the draw order of the call
    sites is fixed, so the same seed reproduces the same dataset.
    """

    MULTIPLIER = 1664525
    INCREMENT = 1013904223
    MODULUS = 2 ** 32

    def __init__(self, seed: int = DEFAULT_SEED):
        self.seed = seed
        self.state = seed % self.MODULUS

    def random(self) -> float:
        self.state = (self.MULTIPLIER * self.state + self.INCREMENT) % self.MODULUS
        return self.state / self.MODULUS

    def below(self, n: int) -> int:
        """Integer in [0, n) from a single draw."""
        return int(self.random() * n)

    def choice(self, seq: Sequence[Any]) -> Any:
        return seq[self.below(len(seq))]


# ──────────────────────────────────────────────────────────────────────────────
# DATA MODELS
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class Student:
    """Named student (PID tier)."""
    id: str
    school_id: str
    year_group: str
    name: str


@dataclass
class CredentialRecord:
    """Login id + password issued to a school."""
    school_id: str
    id: str
    password: str


@dataclass
class StudentCredential:
    """A credential record bound to exactly one student."""
    school_id: str
    id: str
    password: str
    student_id: str
    name: str
    year_group: str


@dataclass
class RewriteMapEntry:
    school_id: str
    student_id: str
    uid: str


@dataclass
class SurveyScore:
    total: int
    items: list[int] = field(default_factory=list)


class ScoreLookup:
    """Survey score accessors shared by raw and relabelled responses."""
    scores: dict[str, SurveyScore]

    def total(self, survey_id: str) -> int | None:
        score = self.scores.get(survey_id)
        return score.total if score is not None else None

    def item(self, survey_id: str, number: int) -> int | None:
        """1-based item score, None when the survey or item is absent."""
        score = self.scores.get(survey_id)
        if score is None or not 1 <= number <= len(score.items):
            return None
        return score.items[number - 1]


@dataclass
class RawResponse(ScoreLookup):
    """One student's answers for one wave, labelled with the student id."""
    student_id: str
    school_id: str
    year_group: str
    wave: str
    scores: dict[str, SurveyScore] = field(default_factory=dict)
    ethnicity: str | None = None


@dataclass
class RelabelledResponse(ScoreLookup):
    """Same answers with the student id rewritten to a UID."""
    uid: str
    school_id: str
    year_group: str
    wave: str
    scores: dict[str, SurveyScore] = field(default_factory=dict)
    ethnicity: str | None = None


@dataclass
class SurveyStats:
    n: int = 0
    sum: int = 0
    mean: float = 0.0
    sd: float = 0.0
    ci95: float = 0.0


@dataclass
class AggregateRow:
    """Per-group statistics for every survey, with a suppression decision."""
    ttp: str
    school: str
    year_group: str
    ethnicity: str
    wave: str
    stats: dict[str, SurveyStats] = field(default_factory=dict)
    suppressed: bool = False
    note: str = ""

    def to_row(self) -> dict[str, Any]:
        """Flat row with `<survey>-n`, `<survey>-mean`, ... columns."""
        row: dict[str, Any] = {f: getattr(self, f) for f in GROUPING_FIELDS}
        for survey_id, s in self.stats.items():
            row[f"{survey_id}-n"] = s.n
            row[f"{survey_id}-total"] = s.sum
            row[f"{survey_id}-mean"] = s.mean
            row[f"{survey_id}-sd"] = s.sd
            row[f"{survey_id}-ci95"] = s.ci95
        row["suppressed"] = self.suppressed
        row["note"] = self.note
        return row


@dataclass
class WavePoint:
    wave: str
    n: int = 0
    mean: float = 0.0
    ci95: float = 0.0


# ──────────────────────────────────────────────────────────────────────────────
# POPULATION
# ──────────────────────────────────────────────────────────────────────────────

def draw_unique_name(
    rng: DeterministicRandom,
    pool: NamePool,
    used_names: set[str],
    max_attempts: int = MAX_NAME_ATTEMPTS,
) -> str:
    """
    Draw "First Last" from the pool, retrying on names already issued.
    Accepts a duplicate once max_attempts is exhausted.
    Note: consumes two draws per attempt.
    """
    name = ""
    for _ in range(max_attempts):
        name = f"{rng.choice(pool.first)} {rng.choice(pool.last)}"
        if name not in used_names:
            break
    else:
        logger.debug("Name retries exhausted, reusing %r", name)
    used_names.add(name)
    return name


def build_students(
    rng: DeterministicRandom,
    schools: Sequence[School] = SCHOOLS,
    year_groups: Sequence[str] = YEAR_GROUPS,
    name_pools: dict[str, NamePool] = TTP_NAME_POOLS,
) -> list[Student]:
    """Cohorts per school and year group; ids share one counter across schools."""
    counter = STUDENT_ID_START
    students: list[Student] = []
    used_names: set[str] = set()

    for school in schools:
        pool = name_pools.get(school.ttp_id, name_pools[FALLBACK_TTP_ID])
        for year_group in year_groups:
            cohort_size = COHORT_SIZE_MIN + rng.below(COHORT_SIZE_SPAN)
            for _ in range(cohort_size):
                name = draw_unique_name(rng, pool, used_names)
                students.append(Student(
                    id=f"{school.id.upper()}-{counter}",
                    school_id=school.id,
                    year_group=year_group,
                    name=name,
                ))
                counter += 1

    return students


# ──────────────────────────────────────────────────────────────────────────────
# CREDENTIALS
# ──────────────────────────────────────────────────────────────────────────────

def credential_pool_size(student_count: int) -> int:
    return math.ceil(student_count * CREDENTIAL_OVERSIZE_FACTOR)


def short_hash(rng: DeterministicRandom, length: int = CREDENTIAL_ID_LENGTH) -> str:
    """Lowercase base36 string, one draw per character."""
    return "".join(rng.choice(BASE36_ALPHABET) for _ in range(length))


def build_credential_pool(
    students: Sequence[Student],
    rng: DeterministicRandom,
    schools: Sequence[School] = SCHOOLS,
) -> tuple[list[CredentialRecord], dict[str, int]]:
    """
    Oversized per-school credential pool.

    The run stream gives exactly one draw per school, the legacy base value.
    Id and password characters come from a per-school side stream seeded
    with the run seed plus that base value, so the responses drawn after
    this stage see the same sequence as a reference run.

    Returns the records (school order, then issue order) and the base values.
    """
    credentials: list[CredentialRecord] = []
    base_values: dict[str, int] = {}

    for school in schools:
        base = rng.below(90000) + 10000
        base_values[school.id] = base
        chars = DeterministicRandom(rng.seed + base)
        required = sum(1 for s in students if s.school_id == school.id)
        issued: set[str] = set()

        for _ in range(credential_pool_size(required)):
            cred_id = f"{school.id}-{short_hash(chars)}"
            while cred_id in issued:
                cred_id = f"{school.id}-{short_hash(chars)}"
            issued.add(cred_id)
            password = (
                f"{short_hash(chars, PASSWORD_PREFIX_LENGTH)}"
                f"-{short_hash(chars, PASSWORD_SUFFIX_LENGTH)}"
            )
            credentials.append(CredentialRecord(
                school_id=school.id,
                id=cred_id,
                password=password,
            ))

    return credentials, base_values


def assign_credentials(
    students: Sequence[Student],
    credentials: Sequence[CredentialRecord],
) -> list[StudentCredential]:
    """
    Give each student (generation order) the first unassigned credential
    of their school. Raises InsufficientCredentialsError if a school's pool
    runs dry.
    """
    available: dict[str, deque[CredentialRecord]] = defaultdict(deque)
    for cred in credentials:
        available[cred.school_id].append(cred)

    assigned: list[StudentCredential] = []
    for student in students:
        queue = available.get(student.school_id)
        if not queue:
            raise InsufficientCredentialsError(student.id, student.school_id)
        cred = queue.popleft()
        assigned.append(StudentCredential(
            school_id=student.school_id,
            id=cred.id,
            password=cred.password,
            student_id=student.id,
            name=student.name,
            year_group=student.year_group,
        ))
    return assigned


# ──────────────────────────────────────────────────────────────────────────────
# RESPONSES
# ──────────────────────────────────────────────────────────────────────────────

def initial_elevation_state(rng: DeterministicRandom) -> ElevationState:
    if rng.random() < INITIAL_ELEVATION_RATE:
        return ElevationState.ELEVATED
    return ElevationState.NORMAL


def next_elevation_state(
    state: ElevationState,
    elevated_this_wave: bool,
    rng: DeterministicRandom,
) -> ElevationState:
    """
    Elevated -> Normal with p=0.5; Normal -> Elevated with p=0.5 only when
    the wave itself was elevated. Draws only on the branch that needs one.
    """
    if state is ElevationState.ELEVATED:
        if rng.random() < ELEVATION_RECOVERY_RATE:
            return ElevationState.NORMAL
        return state
    if elevated_this_wave and rng.random() < ELEVATION_ONSET_RATE:
        return ElevationState.ELEVATED
    return state


def draw_item_score(rng: DeterministicRandom, elevated: bool) -> int:
    """Uniform 0..3, or uniform 2..3 when elevated (the 0..3 draw is still taken)."""
    score = rng.below(MAX_ITEM_SCORE + 1)
    if elevated:
        score = min(MAX_ITEM_SCORE, 2 + rng.below(2))
    return score


def simulate_wave_scores(
    rng: DeterministicRandom,
    elevated: bool,
    surveys: Sequence[SurveyDefinition] = SURVEYS,
) -> dict[str, SurveyScore]:
    scores: dict[str, SurveyScore] = {}
    for survey in surveys:
        items = [draw_item_score(rng, elevated) for _ in range(survey.items)]
        scores[survey.id] = SurveyScore(total=sum(items), items=items)
    return scores


def simulate_student_responses(
    student: Student,
    rng: DeterministicRandom,
    waves: Sequence[str] = WAVES,
    surveys: Sequence[SurveyDefinition] = SURVEYS,
) -> list[RawResponse]:
    """All waves for one student; skipped waves leave the latent state alone."""
    responses: list[RawResponse] = []
    state = initial_elevation_state(rng)

    for wave in waves:
        if rng.random() < MISSING_RESPONSE_RATE:
            continue
        elevated_this_wave = (
            state is ElevationState.ELEVATED
            or rng.random() < WAVE_ELEVATION_RATE
        )
        responses.append(RawResponse(
            student_id=student.id,
            school_id=student.school_id,
            year_group=student.year_group,
            wave=wave,
            scores=simulate_wave_scores(rng, elevated_this_wave, surveys),
        ))
        state = next_elevation_state(state, elevated_this_wave, rng)

    return responses


def build_responses(
    students: Sequence[Student],
    rng: DeterministicRandom,
    waves: Sequence[str] = WAVES,
    surveys: Sequence[SurveyDefinition] = SURVEYS,
) -> list[RawResponse]:
    responses: list[RawResponse] = []
    for student in students:
        responses.extend(simulate_student_responses(student, rng, waves, surveys))
    return responses


# ──────────────────────────────────────────────────────────────────────────────
# PSEUDONYMISATION
# ──────────────────────────────────────────────────────────────────────────────

def format_uid(index: int) -> str:
    """1 -> UID-00001"""
    return f"{UID_PREFIX}{index:0{UID_WIDTH}d}"


def build_rewrite_map(students: Sequence[Student]) -> list[RewriteMapEntry]:
    return [
        RewriteMapEntry(school_id=s.school_id, student_id=s.id, uid=format_uid(idx))
        for idx, s in enumerate(students, start=1)
    ]


def relabel_responses(
    responses: Iterable[RawResponse],
    rewrite_map: Sequence[RewriteMapEntry],
) -> list[RelabelledResponse]:
    """
    Swap student ids for UIDs. Unmapped students get the UNKNOWN sentinel
    instead of an error.
    """
    by_student = {entry.student_id: entry.uid for entry in rewrite_map}
    relabelled: list[RelabelledResponse] = []
    unknown = 0

    for resp in responses:
        uid = by_student.get(resp.student_id)
        if uid is None:
            uid = UNKNOWN_UID
            unknown += 1
        relabelled.append(RelabelledResponse(
            uid=uid,
            school_id=resp.school_id,
            year_group=resp.year_group,
            wave=resp.wave,
            scores=resp.scores,
            ethnicity=resp.ethnicity,
        ))

    if unknown:
        logger.warning(
            "%d response(s) had no rewrite-map entry; labelled %s",
            unknown, UNKNOWN_UID,
        )
    return relabelled


# ──────────────────────────────────────────────────────────────────────────────
# AGGREGATION (pure functions — safe to re-run with new parameters)
# ──────────────────────────────────────────────────────────────────────────────

GROUPING_FIELDS: tuple[str, ...] = ("ttp", "school", "year_group", "ethnicity", "wave")

ALL_LABELS: dict[str, str] = {
    "ttp": "All TTPs",
    "school": "All schools",
    "year_group": "All year groups",
    "ethnicity": "All ethnicities",
}
NOT_RECORDED = "Not recorded"
UNASSIGNED_TTP = "Unassigned"

READY_NOTE = "Ready for responsive queries"


def mean(values: Sequence[float]) -> float:
    return float(statistics.mean(values)) if values else 0.0


def sample_stddev(values: Sequence[float]) -> float:
    """Standard deviation with divisor n-1; 0 for fewer than two values."""
    if len(values) <= 1:
        return 0.0
    return statistics.stdev(values)


def ci95(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return Z_95 * sample_stddev(values) / math.sqrt(len(values))


def compute_survey_stats(totals: Sequence[int]) -> SurveyStats:
    return SurveyStats(
        n=len(totals),
        sum=sum(totals),
        mean=round(mean(totals), 2),
        sd=round(sample_stddev(totals), 2),
        ci95=round(ci95(totals), 2),
    )


def suppression_note(threshold: int) -> str:
    return f"Suppressed: fewer than {threshold} records"


def validate_grouping(group_by: Iterable[str]) -> tuple[str, ...]:
    """Normalize to catalog order, always including wave."""
    if isinstance(group_by, str):
        group_by = (group_by,)
    requested = {f for f in group_by if f != "all"}
    unknown = requested - set(GROUPING_FIELDS)
    if unknown:
        raise ValueError(
            f"group_by fields must be drawn from {GROUPING_FIELDS}, got {sorted(unknown)}"
        )
    requested.add("wave")
    return tuple(f for f in GROUPING_FIELDS if f in requested)


def validate_threshold(threshold: int) -> int:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise ValueError(f"threshold must be a non-negative integer, got {threshold!r}")
    return threshold


def _dimension_value(
    response: RelabelledResponse,
    dimension: str,
    school_to_ttp: dict[str, str],
) -> str:
    if dimension == "ttp":
        return school_to_ttp.get(response.school_id, UNASSIGNED_TTP)
    if dimension == "school":
        return response.school_id
    if dimension == "ethnicity":
        return response.ethnicity or NOT_RECORDED
    return getattr(response, dimension)


def summarize_group(
    key: dict[str, str],
    responses: Sequence[RelabelledResponse],
    threshold: int = DEFAULT_SUPPRESSION_THRESHOLD,
    surveys: Sequence[SurveyDefinition] = SURVEYS,
) -> AggregateRow:
    """
    Build one AggregateRow from a (possibly empty) group. Dimensions missing
    from `key` are reported as their "All ..." label.
    """
    stats: dict[str, SurveyStats] = {}
    for survey in surveys:
        totals = [
            t for t in (r.total(survey.id) for r in responses)
            if t is not None
        ]
        stats[survey.id] = compute_survey_stats(totals)

    reference_n = stats[surveys[0].id].n if surveys else 0
    suppressed = reference_n < threshold

    return AggregateRow(
        ttp=key.get("ttp", ALL_LABELS["ttp"]),
        school=key.get("school", ALL_LABELS["school"]),
        year_group=key.get("year_group", ALL_LABELS["year_group"]),
        ethnicity=key.get("ethnicity", ALL_LABELS["ethnicity"]),
        wave=key["wave"],
        stats=stats,
        suppressed=suppressed,
        note=suppression_note(threshold) if suppressed else READY_NOTE,
    )


def aggregate_responses(
    responses: Iterable[RelabelledResponse],
    group_by: Iterable[str] = (),
    threshold: int = DEFAULT_SUPPRESSION_THRESHOLD,
    schools: Sequence[School] = SCHOOLS,
    surveys: Sequence[SurveyDefinition] = SURVEYS,
) -> list[AggregateRow]:
    """
    Group responses by the chosen fields (plus wave) and compute per-survey
    n / mean / sd / ci95. Groups whose reference-survey n falls below the
    threshold stay in the result with suppressed=True.

    Rows come back in first-seen order; use sort_by_wave for chronology.
    """
    fields = validate_grouping(group_by)
    threshold = validate_threshold(threshold)
    school_to_ttp = {s.id: s.ttp_id for s in schools}

    groups: dict[tuple[str, ...], list[RelabelledResponse]] = {}
    for resp in responses:
        key = tuple(_dimension_value(resp, f, school_to_ttp) for f in fields)
        groups.setdefault(key, []).append(resp)

    rows = [
        summarize_group(dict(zip(fields, key)), members, threshold, surveys)
        for key, members in groups.items()
    ]
    logger.info(
        "Aggregated %d group(s) by %s, %d suppressed (threshold %d)",
        len(rows), "+".join(fields), sum(1 for r in rows if r.suppressed), threshold,
    )
    return rows


def sort_by_wave(
    rows: Iterable[AggregateRow],
    waves: Sequence[str] = WAVES,
) -> list[AggregateRow]:
    """Stable sort into wave catalog order; unknown waves go last."""
    order = {w: i for i, w in enumerate(waves)}
    return sorted(rows, key=lambda r: order.get(r.wave, len(order)))


def wave_trend(
    rows: Iterable[AggregateRow],
    survey_id: str,
    waves: Sequence[str] = WAVES,
    **selection: str,
) -> list[WavePoint]:
    """
    Pooled per-wave mean and 95% CI across releasable rows.

    Suppressed rows are excluded. `selection` narrows rows by dimension,
    e.g. wave_trend(rows, "phq9", school="cherwell").
    """
    unknown = set(selection) - set(GROUPING_FIELDS)
    if unknown:
        raise ValueError(f"selection fields must be drawn from {GROUPING_FIELDS}, got {sorted(unknown)}")

    by_wave: dict[str, list[SurveyStats]] = defaultdict(list)
    for row in rows:
        if row.suppressed:
            continue
        if any(getattr(row, k) != v for k, v in selection.items()):
            continue
        stats = row.stats.get(survey_id)
        if stats is not None and stats.n > 0:
            by_wave[row.wave].append(stats)

    points: list[WavePoint] = []
    for wave in waves:
        entries = by_wave.get(wave, [])
        total_n = sum(s.n for s in entries)
        if not total_n:
            points.append(WavePoint(wave=wave))
            continue
        pooled_mean = sum(s.n * s.mean for s in entries) / total_n
        # within-group plus between-group variance
        variance = sum(
            s.n * s.sd ** 2 + s.n * (s.mean - pooled_mean) ** 2 for s in entries
        ) / total_n
        points.append(WavePoint(
            wave=wave,
            n=total_n,
            mean=round(pooled_mean, 2),
            ci95=round(Z_95 * math.sqrt(variance / total_n), 2),
        ))
    return points


# ──────────────────────────────────────────────────────────────────────────────
# FIELD SCHEMA (tabular shaping for consumers)
# ──────────────────────────────────────────────────────────────────────────────

MISSING_MARK = "—"


def _format_missing(value: Any) -> Any:
    return MISSING_MARK if value is None else value


@dataclass(frozen=True)
class ColumnSpec:
    """One logical column: how to pull a value from a record and show it."""
    key: str
    label: str
    extract: Callable[[Any], Any]
    fmt: Callable[[Any], Any] = _format_missing

    def render(self, record: Any) -> Any:
        return self.fmt(self.extract(record))


def _total_extractor(survey_id: str) -> Callable[[Any], Any]:
    return lambda record: record.total(survey_id)


def _item_extractor(survey_id: str, number: int) -> Callable[[Any], Any]:
    return lambda record: record.item(survey_id, number)


def build_response_columns(
    surveys: Sequence[SurveyDefinition] = SURVEYS,
    id_field: str = "uid",
    schools: Sequence[School] = SCHOOLS,
    ttps: Sequence[TrustedThirdParty] = TTPS,
) -> list[ColumnSpec]:
    """
    Column schema for raw (id_field="student_id") or relabelled responses:
    context columns, then per survey a total and its items.
    """
    school_names = {s.id: s.name for s in schools}
    ttp_names = {t.id: t.name for t in ttps}
    school_ttp = {s.id: ttp_names.get(s.ttp_id, s.ttp_id) for s in schools}

    columns = [
        ColumnSpec("ttp", "TTP", lambda r: school_ttp.get(r.school_id)),
        ColumnSpec("school", "School", lambda r: school_names.get(r.school_id, r.school_id)),
        ColumnSpec("year_group", "Yeargroup", lambda r: r.year_group),
        ColumnSpec(id_field, "Student", lambda r: getattr(r, id_field, None)),
        ColumnSpec("wave", "Wave", lambda r: r.wave),
    ]
    for survey in surveys:
        columns.append(ColumnSpec(
            f"{survey.id}-total", f"{survey.name} Total", _total_extractor(survey.id),
        ))
        for number in range(1, survey.items + 1):
            columns.append(ColumnSpec(
                f"{survey.id}-item-{number}",
                f"{survey.name} Item {number}",
                _item_extractor(survey.id, number),
            ))
    return columns


def responses_frame(
    responses: Sequence[RawResponse | RelabelledResponse],
    columns: Sequence[ColumnSpec] | None = None,
    use_labels: bool = False,
) -> pd.DataFrame:
    """
    DataFrame with one column per ColumnSpec, in schema order.

    With use_labels the frame is for display: headers are the column labels
    and cells go through each column's formatter, so missing values show
    as MISSING_MARK. Otherwise the raw extracted values are kept.
    """
    if columns is None:
        id_field = "student_id" if responses and isinstance(responses[0], RawResponse) else "uid"
        columns = build_response_columns(id_field=id_field)
    frame = pd.DataFrame(
        [{c.key: c.render(r) if use_labels else c.extract(r) for c in columns}
         for r in responses],
        columns=[c.key for c in columns],
    )
    if use_labels:
        frame = frame.rename(columns={c.key: c.label for c in columns})
    return frame


def aggregates_frame(rows: Sequence[AggregateRow]) -> pd.DataFrame:
    return pd.DataFrame([r.to_row() for r in rows])


# ──────────────────────────────────────────────────────────────────────────────
# DATASET ASSEMBLY
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class SurveyDataset:
    """Everything one seeded run produces, as independent collections."""
    seed: int
    ttps: list[TrustedThirdParty]
    schools: list[School]
    year_groups: list[str]
    waves: list[str]
    surveys: list[SurveyDefinition]
    students: list[Student]
    credentials: list[CredentialRecord]
    student_credentials: list[StudentCredential]
    rewrite_map: list[RewriteMapEntry]
    responses: list[RawResponse]
    relabelled_responses: list[RelabelledResponse]
    credential_base_values: dict[str, int] = field(default_factory=dict)
    generation_time_ms: float = field(default=0.0, compare=False)

    @property
    def admin_credentials(self) -> list[CredentialRecord]:
        """Surplus records not bound to any student."""
        assigned = {(c.school_id, c.id) for c in self.student_credentials}
        return [c for c in self.credentials if (c.school_id, c.id) not in assigned]

    def aggregate(
        self,
        group_by: Iterable[str] = ("school", "year_group"),
        threshold: int = DEFAULT_SUPPRESSION_THRESHOLD,
    ) -> list[AggregateRow]:
        return aggregate_responses(
            self.relabelled_responses,
            group_by=group_by,
            threshold=threshold,
            schools=self.schools,
            surveys=self.surveys,
        )

    def summary(self, rows: Sequence[AggregateRow] | None = None) -> dict[str, Any]:
        elevated = sum(
            1 for r in self.responses
            for s in r.scores.values()
            if s.items and min(s.items) >= 2
        )
        data = {
            "seed": self.seed,
            "generation_time_ms": round(self.generation_time_ms, 1),
            "total_ttps": len(self.ttps),
            "total_schools": len(self.schools),
            "total_students": len(self.students),
            "total_credentials": len(self.credentials),
            "admin_credentials": len(self.admin_credentials),
            "total_responses": len(self.responses),
            "expected_responses": len(self.students) * len(self.waves),
            "high_scoring_survey_blocks": elevated,
            "students_by_school": {
                s.id: sum(1 for st in self.students if st.school_id == s.id)
                for s in self.schools
            },
            "data_tiers": {k: v.value for k, v in DATA_TIERS.items()},
            "entity_access": ENTITY_ACCESS,
        }
        if rows is not None:
            data["aggregate_rows"] = len(rows)
            data["suppressed_rows"] = sum(1 for r in rows if r.suppressed)
        return data


def generate(seed: int = DEFAULT_SEED) -> SurveyDataset:
    """
    Build the full dataset from one seed. Each call owns a fresh random
    source; draw order is students, credentials, then responses.
    """
    if isinstance(seed, bool) or not isinstance(seed, int):
        raise ValueError(f"seed must be an integer, got {seed!r}")

    start = time.perf_counter()
    rng = DeterministicRandom(seed)

    students = build_students(rng)
    credentials, base_values = build_credential_pool(students, rng)
    student_credentials = assign_credentials(students, credentials)
    rewrite_map = build_rewrite_map(students)
    responses = build_responses(students, rng)
    relabelled = relabel_responses(responses, rewrite_map)

    logger.info(
        "Built seed %d: %d students, %d credentials (%d spare), %d responses",
        seed, len(students), len(credentials),
        len(credentials) - len(student_credentials), len(responses),
    )

    return SurveyDataset(
        seed=seed,
        ttps=list(TTPS),
        schools=list(SCHOOLS),
        year_groups=list(YEAR_GROUPS),
        waves=list(WAVES),
        surveys=list(SURVEYS),
        students=students,
        credentials=credentials,
        student_credentials=student_credentials,
        rewrite_map=rewrite_map,
        responses=responses,
        relabelled_responses=relabelled,
        credential_base_values=base_values,
        generation_time_ms=(time.perf_counter() - start) * 1000,
    )


# ──────────────────────────────────────────────────────────────────────────────
# EXPORT
# ──────────────────────────────────────────────────────────────────────────────

def _record_collections(dataset: SurveyDataset) -> dict[str, list]:
    return {
        "ttps": dataset.ttps,
        "schools": dataset.schools,
        "surveys": dataset.surveys,
        "students": dataset.students,
        "credentials": dataset.credentials,
        "admin_credentials": dataset.admin_credentials,
        "student_credentials": dataset.student_credentials,
        "rewrite_map": dataset.rewrite_map,
    }


def to_json(
    dataset: SurveyDataset,
    output_dir: str,
    rows: Sequence[AggregateRow] | None = None,
) -> dict[str, str]:
    """Export every collection (and optional aggregates) as JSON files."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    files = {}

    datasets: dict[str, list] = {
        **_record_collections(dataset),
        "survey_responses": dataset.responses,
        "relabelled_survey_responses": dataset.relabelled_responses,
    }
    if rows is not None:
        datasets["aggregates"] = list(rows)

    for name, records in datasets.items():
        path = out / f"{name}.json"
        path.write_text(json.dumps(
            [asdict(r) for r in records], indent=2, default=str,
        ))
        files[name] = str(path)

    path = out / "summary.json"
    path.write_text(json.dumps(dataset.summary(rows), indent=2, default=str))
    files["summary"] = str(path)

    return files


def to_csv(
    dataset: SurveyDataset,
    output_dir: str,
    rows: Sequence[AggregateRow] | None = None,
) -> dict[str, str]:
    """Export as CSV; responses use the column schema, aggregates are flattened."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    files = {}

    for name, records in _record_collections(dataset).items():
        if not records:
            continue
        path = out / f"{name}.csv"
        flat_rows = [asdict(r) for r in records]
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=flat_rows[0].keys())
            writer.writeheader()
            writer.writerows(flat_rows)
        files[name] = str(path)

    for name, responses, id_field in [
        ("survey_responses", dataset.responses, "student_id"),
        ("relabelled_survey_responses", dataset.relabelled_responses, "uid"),
    ]:
        path = out / f"{name}.csv"
        columns = build_response_columns(dataset.surveys, id_field, dataset.schools, dataset.ttps)
        responses_frame(responses, columns).to_csv(path, index=False)
        files[name] = str(path)

    if rows:
        path = out / "aggregates.csv"
        aggregates_frame(sort_by_wave(rows, dataset.waves)).to_csv(path, index=False)
        files["aggregates"] = str(path)

    return files


# ──────────────────────────────────────────────────────────────────────────────
# REPORT PRINTER
# ──────────────────────────────────────────────────────────────────────────────

def print_report(dataset: SurveyDataset, rows: Sequence[AggregateRow]):
    """Print a tier-by-tier walkthrough of the generated data to stdout."""
    summary = dataset.summary(rows)
    school_names = {s.id: s.name for s in dataset.schools}
    ttp_names = {t.id: t.name for t in dataset.ttps}
    reference = dataset.surveys[0]

    print(f"\n{'=' * 72}")
    print("  SURVEY DATA HANDLING — DEMO DATASET")
    print(f"{'=' * 72}")
    print(f"  Seed: {dataset.seed} | Generated in {summary['generation_time_ms']:.0f}ms")

    print(f"\n  Students:        {summary['total_students']:,}")
    print(f"  Credentials:     {summary['total_credentials']:,} "
          f"({summary['admin_credentials']:,} administrative)")
    print(f"  Responses:       {summary['total_responses']:,} "
          f"of {summary['expected_responses']:,} possible")
    print(f"  Aggregate rows:  {summary['aggregate_rows']:,} "
          f"({summary['suppressed_rows']:,} suppressed)")

    print(f"\n{'─' * 72}")
    print("  SCHOOLS")
    print(f"  {'School':<26} {'TTP':<24} {'Students':>9}")
    print(f"  {'─' * 60}")
    for school in dataset.schools:
        print(
            f"  {school.name:<26} {ttp_names.get(school.ttp_id, school.ttp_id):<24} "
            f"{summary['students_by_school'][school.id]:>9,}"
        )

    print(f"\n{'─' * 72}")
    print("  DATA TIERS")
    print(f"  {'─' * 60}")
    for collection, tier in DATA_TIERS.items():
        print(f"  {collection:<28}: {tier.value}")

    print(f"\n{'─' * 72}")
    print(f"  AGGREGATES ({reference.name} reference, sorted by wave)")
    print(f"  {'Group':<40} {'Wave':<8} {'N':>4} {'Mean':>7} {'CI95':>6}")
    print(f"  {'─' * 68}")
    for row in sort_by_wave(rows, dataset.waves):
        stats = row.stats[reference.id]
        label = " / ".join(
            school_names.get(v, v) for v in (row.ttp, row.school, row.year_group)
            if not v.startswith("All ")
        ) or "All"
        flag = " [suppressed]" if row.suppressed else ""
        print(
            f"  {label[:40]:<40} {row.wave:<8} {stats.n:>4} "
            f"{stats.mean:>7.2f} {stats.ci95:>6.2f}{flag}"
        )

    print(f"\n{'─' * 72}")
    print(f"  {reference.name} TREND (releasable rows only)")
    print(f"  {'─' * 60}")
    for point in wave_trend(rows, reference.id, dataset.waves):
        print(f"  {point.wave:<10} n={point.n:<5} mean={point.mean:>6.2f} ± {point.ci95:.2f}")

    print(f"\n{'=' * 72}\n")


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def parse_group_by(value: str) -> tuple[str, ...]:
    """'school,year_group' -> ('school', 'year_group'); validated."""
    fields = tuple(f.strip() for f in value.split(",") if f.strip())
    validate_grouping(fields)
    return fields


def main():
    parser = argparse.ArgumentParser(
        description="Synthetic Survey Data-Tier Generator",
    )
    parser.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Random seed")
    parser.add_argument(
        "--threshold", type=int, default=DEFAULT_SUPPRESSION_THRESHOLD,
        help="Minimum group size before a row is suppressed",
    )
    parser.add_argument(
        "--group-by", type=parse_group_by, default=("school", "year_group"),
        help=f"Comma-separated grouping fields from {', '.join(GROUPING_FIELDS)} (wave always added)",
    )
    parser.add_argument(
        "--output", choices=["report", "json", "csv", "all"],
        default="report", help="Output format",
    )
    parser.add_argument("--output-dir", default="./output", help="Output directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    dataset = generate(args.seed)
    rows = dataset.aggregate(group_by=args.group_by, threshold=args.threshold)

    print_report(dataset, rows)

    if args.output in ("json", "all"):
        files = to_json(dataset, args.output_dir, rows)
        print(f"  JSON -> {args.output_dir}/ ({len(files)} files)")

    if args.output in ("csv", "all"):
        files = to_csv(dataset, args.output_dir, rows)
        print(f"  CSV  -> {args.output_dir}/ ({len(files)} files)")


if __name__ == "__main__":
    main()
