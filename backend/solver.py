"""
Weekly Timetable Solver - Randomized Greedy Implementation

Places one-period lessons for every class into a day/period grid so that no
teacher is in two classes at once and no class slot is filled twice.
Each attempt shuffles the lessons and places them greedily; the first
attempt that places everything wins.
"""

import logging
import random
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Defaults used when a group does not override them in its settings
DAYS = ['Mon', 'Tue', 'Wed', 'Thu', 'Fri']
MAX_PERIODS = 6
ROOMS = ['101', '102', 'LAB-306']
ATTEMPTS = 30
LAB_MARKER = 'LAB'

# Fallback room labels when no configured room matches the lesson type
FALLBACK_LAB_ROOM = 'LAB'
FALLBACK_ROOM = 'N/A'


# Errors

class SchedulingError(ValueError):
    """Base class for every error the timetable engine reports."""


class ConfigurationError(SchedulingError):
    """The configuration is inconsistent; no attempt was made."""


class NoClassesError(ConfigurationError):
    def __init__(self):
        super().__init__('You must define at least one class.')


class DuplicateClassError(ConfigurationError):
    def __init__(self, class_name: str):
        self.class_name = class_name
        super().__init__(f"Input Error: Class name '{class_name}' is used more than once.")


class PeriodMismatchError(ConfigurationError):
    def __init__(self, class_name: str, available: int, assigned: int):
        self.class_name = class_name
        self.available = available
        self.assigned = assigned
        super().__init__(
            f"Input Error: For class '{class_name}', total available periods ({available}) "
            f"do not match total periods assigned to subjects ({assigned})."
        )


class InvalidPeriodCountError(ConfigurationError):
    def __init__(self, class_name: str, day: str, count: int, max_periods: int):
        self.class_name = class_name
        self.day = day
        self.count = count
        self.max_periods = max_periods
        super().__init__(
            f"Input Error: Class '{class_name}' has {count} periods on {day}, "
            f"allowed range is 0-{max_periods}."
        )


class InvalidAssignmentError(ConfigurationError):
    def __init__(self, class_name: str, subject: str, periods):
        self.class_name = class_name
        self.subject = subject
        self.periods = periods
        super().__init__(
            f"Input Error: Class '{class_name}' assigns {periods!r} periods of '{subject}'; "
            f"periods must be a positive integer."
        )


class MissingTeacherError(ConfigurationError):
    def __init__(self, class_name: str, subject: str):
        self.class_name = class_name
        self.subject = subject
        super().__init__(
            f"Input Error: Class '{class_name}' has no teacher assigned for '{subject}'."
        )


class InvalidSettingsError(ConfigurationError):
    def __init__(self, setting: str, value):
        self.setting = setting
        self.value = value
        super().__init__(f"Input Error: Invalid scheduling setting '{setting}': {value!r}.")


class UnknownSubjectError(ConfigurationError):
    def __init__(self, class_name: str, subject: str):
        self.class_name = class_name
        self.subject = subject
        super().__init__(
            f"Input Error: Class '{class_name}' references unknown subject '{subject}'."
        )


class GenerationFailure(SchedulingError):
    """Every attempt failed to place all lessons.

    This is an expected outcome for infeasible or tight inputs, not a bug.
    """

    def __init__(self, attempts_tried: int, diagnostics: Optional[dict] = None):
        self.attempts_tried = attempts_tried
        self.diagnostics = diagnostics or {}
        super().__init__(
            f'Generation Failure: Could not find a valid timetable after {attempts_tried} attempts. '
            f'This could be due to a scheduling conflict. Check your data.'
        )


# Data model

@dataclass(frozen=True)
class Subject:
    name: str
    abbreviation: str
    is_lab: bool = False
    periods_per_week: Optional[int] = None  # informational only


@dataclass(frozen=True)
class Teacher:
    name: str
    subjects: tuple = ()  # abbreviations this teacher may teach


@dataclass
class SubjectAssignment:
    subject: str  # abbreviation
    periods: int
    teachers: list = field(default_factory=list)  # always a list, rotated round-robin


@dataclass
class ClassConfig:
    name: str
    periods_per_day: dict = field(default_factory=dict)  # day -> period count, missing = 0
    subjects_assigned: list = field(default_factory=list)

    def periods_on(self, day: str) -> int:
        return self.periods_per_day.get(day) or 0


@dataclass(frozen=True)
class AtomicUnit:
    class_name: str
    subject: str
    teacher: Optional[str]
    is_lab: bool = False


@dataclass
class TimetableSlot:
    period: int
    subject: Optional[str] = None
    teacher: Optional[str] = None
    room: Optional[str] = None
    is_lab: bool = False

    def as_dict(self):
        return {
            'period': self.period,
            'subject': self.subject,
            'teacher': self.teacher,
            'room': self.room,
            'isLab': self.is_lab,
        }


@dataclass
class TimetableDay:
    day: str
    slots: list = field(default_factory=list)

    def as_dict(self):
        return {'day': self.day, 'slots': [s.as_dict() for s in self.slots]}


@dataclass
class OccupancyGrid:
    """Scratch state of one attempt: class cells and teachers busy per (day, period)."""
    days: list
    max_periods: int
    cells: dict = field(default_factory=dict)  # class -> day -> [TimetableSlot]
    busy: dict = field(default_factory=dict)  # (day, period) -> set of teachers

    @classmethod
    def empty(cls, class_names: list, days: list, max_periods: int) -> 'OccupancyGrid':
        grid = cls(days=list(days), max_periods=max_periods)
        for name in class_names:
            grid.cells[name] = {
                day: [TimetableSlot(period=p) for p in range(1, max_periods + 1)]
                for day in days
            }
        for day in days:
            for p in range(1, max_periods + 1):
                grid.busy[(day, p)] = set()
        return grid

    def is_free(self, class_name: str, day: str, period_index: int) -> bool:
        return self.cells[class_name][day][period_index].subject is None

    def teacher_busy(self, teacher: str, day: str, period: int) -> bool:
        return teacher in self.busy[(day, period)]

    def commit(self, unit: AtomicUnit, day: str, period_index: int, room: Optional[str]):
        slot = self.cells[unit.class_name][day][period_index]
        slot.subject = unit.subject
        slot.teacher = unit.teacher
        slot.room = room
        slot.is_lab = unit.is_lab
        self.busy[(day, slot.period)].add(unit.teacher)

    def filled_count(self) -> int:
        return sum(
            1
            for days in self.cells.values()
            for slots in days.values()
            for s in slots
            if s.subject is not None
        )


@dataclass
class SchedulerSettings:
    days: list = field(default_factory=lambda: DAYS.copy())
    max_periods: int = MAX_PERIODS
    rooms: list = field(default_factory=lambda: ROOMS.copy())
    attempts: int = ATTEMPTS
    lab_marker: str = LAB_MARKER


@dataclass
class TeacherStat:
    teacher: str
    teaching: int = 0
    free: int = 0
    classes: int = 0
    busiest_day: Optional[str] = None


# Input normalization

def normalize_teachers(value) -> list:
    """Normalize a teacher field that may be a name, a list of names, or empty."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    return [str(t).strip() for t in value if t is not None and str(t).strip()]


def parse_subjects(subjects: list[dict]) -> list[Subject]:
    return [
        Subject(
            name=s.get('name') or s['abbreviation'],
            abbreviation=s['abbreviation'],
            is_lab=bool(s.get('isLab', False)),
            periods_per_week=s.get('periodsPerWeek'),
        )
        for s in subjects or []
    ]


def parse_teachers(teachers: list[dict]) -> list[Teacher]:
    return [Teacher(name=t['name'], subjects=tuple(t.get('subjects') or ())) for t in teachers or []]


def parse_classes(classes: list[dict]) -> list[ClassConfig]:
    class_objs = []
    for c in classes or []:
        assignments = [
            SubjectAssignment(
                subject=sa['subject'],
                periods=sa.get('periods', 0),
                # Some clients send 'teachers', older ones a single 'teacher'
                teachers=normalize_teachers(sa.get('teachers', sa.get('teacher'))),
            )
            for sa in c.get('subjectsAssigned') or []
        ]
        class_objs.append(ClassConfig(
            name=c['name'],
            periods_per_day=dict(c.get('periodsPerDay') or {}),
            subjects_assigned=assignments,
        ))
    return class_objs


def parse_settings(settings: Optional[dict]) -> SchedulerSettings:
    """Build settings from a group's dict; defaults apply only to missing keys."""
    settings = settings or {}

    def pick(key, default):
        value = settings.get(key)
        return default if value is None else value

    opts = SchedulerSettings(
        days=list(pick('days', DAYS)),
        max_periods=pick('maxPeriods', MAX_PERIODS),
        rooms=list(pick('rooms', ROOMS)),
        attempts=pick('attempts', ATTEMPTS),
        lab_marker=pick('labMarker', LAB_MARKER),
    )
    validate_settings(opts)
    return opts


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def validate_settings(opts: SchedulerSettings) -> None:
    if not _positive_int(opts.attempts):
        raise InvalidSettingsError('attempts', opts.attempts)
    if not _positive_int(opts.max_periods):
        raise InvalidSettingsError('maxPeriods', opts.max_periods)
    if not opts.days or len(set(opts.days)) != len(opts.days):
        raise InvalidSettingsError('days', opts.days)
    if not opts.lab_marker:
        raise InvalidSettingsError('labMarker', opts.lab_marker)


# Config validation

def validate_config(
    classes: list[ClassConfig],
    days: list[str] = None,
    max_periods: int = MAX_PERIODS,
    subjects: list[Subject] = None,
    teachers: list[Teacher] = None,
) -> None:
    """Check the configuration before any placement is attempted.

    Raises a ConfigurationError subclass on the first problem found. A
    period-count mismatch can never be fixed by reshuffling, so it is
    rejected here rather than left to exhaust the attempt budget.

    Teachers missing from the roster, or not listed for the subject they are
    assigned, are only logged.
    """
    days = days or DAYS
    if len(set(days)) != len(days):
        raise InvalidSettingsError('days', days)
    if not classes:
        raise NoClassesError()

    known_subjects = {s.abbreviation for s in subjects} if subjects else None
    roster = {t.name: set(t.subjects) for t in teachers} if teachers else None

    seen = set()
    for cls in classes:
        if cls.name in seen:
            raise DuplicateClassError(cls.name)
        seen.add(cls.name)

        # Periods on days outside the week still count toward the total,
        # so they surface as a mismatch instead of vanishing
        extra_days = [d for d in cls.periods_per_day if d not in days and cls.periods_on(d)]
        if extra_days:
            logger.warning(f"Class '{cls.name}' has periods on unscheduled days {extra_days}")

        for day in days:
            count = cls.periods_on(day)
            if count < 0 or count > max_periods:
                raise InvalidPeriodCountError(cls.name, day, count, max_periods)

        for sa in cls.subjects_assigned:
            if not isinstance(sa.periods, int) or isinstance(sa.periods, bool) or sa.periods <= 0:
                raise InvalidAssignmentError(cls.name, sa.subject, sa.periods)
            if known_subjects is not None and sa.subject not in known_subjects:
                raise UnknownSubjectError(cls.name, sa.subject)
            if not sa.teachers:
                raise MissingTeacherError(cls.name, sa.subject)
            if roster is not None:
                for name in sa.teachers:
                    if name not in roster:
                        logger.warning(f"Teacher '{name}' ({cls.name}/{sa.subject}) is not in the teacher list")
                    elif roster[name] and sa.subject not in roster[name]:
                        logger.warning(f"Teacher '{name}' is not listed for subject '{sa.subject}' ({cls.name})")

        available = sum(cls.periods_on(day) for day in days) + sum(cls.periods_on(d) for d in extra_days)
        assigned = sum(sa.periods for sa in cls.subjects_assigned)
        if available != assigned:
            raise PeriodMismatchError(cls.name, available, assigned)


# Assignment expansion

def expand_assignments(classes: list[ClassConfig], subjects: list[Subject]) -> list[AtomicUnit]:
    """Turn "N periods of X by Y" records into one AtomicUnit per period.

    With several teachers the units rotate through them by index, so a
    6-period assignment with two teachers alternates between them.
    """
    by_abbreviation = {s.abbreviation: s for s in subjects or []}
    units = []
    for cls in classes:
        for sa in cls.subjects_assigned:
            detail = by_abbreviation.get(sa.subject)
            is_lab = detail.is_lab if detail else False
            label = detail.name if detail else sa.subject
            for i in range(sa.periods):
                teacher = sa.teachers[i % len(sa.teachers)] if sa.teachers else None
                units.append(AtomicUnit(
                    class_name=cls.name,
                    subject=label,
                    teacher=teacher,
                    is_lab=is_lab,
                ))
    return units


# Scheduling

def pick_room(is_lab: bool, rooms: list[str], lab_marker: str = LAB_MARKER) -> str:
    """Label a lesson with a room. Rooms are not a scheduled resource."""
    if is_lab:
        return next((r for r in rooms if lab_marker in r), FALLBACK_LAB_ROOM)
    return next((r for r in rooms if lab_marker not in r), FALLBACK_ROOM)


def find_valid_slots(unit: AtomicUnit, cls: ClassConfig, grid: OccupancyGrid) -> list[tuple[str, int]]:
    """All (day, period_index) cells where this unit could go right now."""
    if unit.teacher is None:
        return []
    slots = []
    for day in grid.days:
        daily = min(cls.periods_on(day), grid.max_periods)
        for period_index in range(daily):
            if not grid.is_free(cls.name, day, period_index):
                continue
            if grid.teacher_busy(unit.teacher, day, period_index + 1):
                continue
            slots.append((day, period_index))
    return slots


def run_attempt(
    units: list[AtomicUnit],
    classes: list[ClassConfig],
    days: list[str],
    max_periods: int,
    rng: random.Random,
    rooms: list[str] = None,
    lab_marker: str = LAB_MARKER,
) -> Optional[OccupancyGrid]:
    """One shuffle-and-place pass. Returns the grid, or None if any unit could not be placed."""
    rooms = ROOMS if rooms is None else rooms
    by_name = {c.name: c for c in classes}
    grid = OccupancyGrid.empty([c.name for c in classes], days, max_periods)

    order = list(units)
    rng.shuffle(order)

    for unit in order:
        valid = find_valid_slots(unit, by_name[unit.class_name], grid)
        if not valid:
            logger.debug(f"  no slot for {unit.class_name}/{unit.subject}/{unit.teacher}")
            return None
        # Random choice rather than first fit so early periods don't pile up
        day, period_index = rng.choice(valid)
        grid.commit(unit, day, period_index, pick_room(unit.is_lab, rooms, lab_marker))

    return grid


def teacher_overload(units: list[AtomicUnit], classes: list[ClassConfig], days: list[str], max_periods: int) -> list[dict]:
    """Teachers with more lessons than distinct (day, period) cells their classes use.

    Such a teacher can never be placed without a clash, whatever the order.
    """
    by_name = {c.name: c for c in classes}
    load = Counter(u.teacher for u in units if u.teacher is not None)
    cells = defaultdict(set)
    for u in units:
        if u.teacher is None:
            continue
        cls = by_name[u.class_name]
        for day in days:
            for p in range(min(cls.periods_on(day), max_periods)):
                cells[u.teacher].add((day, p))
    return [
        {'teacher': t, 'periods': n, 'available': len(cells[t])}
        for t, n in sorted(load.items())
        if n > len(cells[t])
    ]


def schedule_units(
    units: list[AtomicUnit],
    classes: list[ClassConfig],
    days: list[str] = None,
    max_periods: int = MAX_PERIODS,
    attempts: int = ATTEMPTS,
    rng: Optional[random.Random] = None,
    rooms: list[str] = None,
    lab_marker: str = LAB_MARKER,
    max_time_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    on_progress: Optional[Callable[[int, int, str], None]] = None,
) -> tuple[OccupancyGrid, int]:
    """Retry run_attempt until one places every unit.

    Args:
        units: Lessons to place
        classes: Class configs (for per-day period counts)
        days: Day names in display order
        max_periods: Grid capacity per day
        attempts: Maximum number of attempts
        rng: Random source; pass a seeded random.Random for repeatable output
        rooms: Room labels used for cosmetic room assignment
        max_time_seconds: Stop starting new attempts after this long
        cancel_event: Stop starting new attempts once this is set
        on_progress: Optional callback(current, total, message)

    Returns:
        (grid, attempts_used) for the first successful attempt

    Raises:
        InvalidSettingsError when attempts is not a positive integer
        GenerationFailure when no attempt succeeded
    """
    days = days or DAYS
    rng = rng or random.Random()
    if not _positive_int(attempts):
        raise InvalidSettingsError('attempts', attempts)
    start_time = time.time()

    tried = 0
    for attempt in range(attempts):
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Generation cancelled after {tried} attempts")
            break
        if max_time_seconds is not None and time.time() - start_time > max_time_seconds:
            logger.info(f"Time limit of {max_time_seconds}s reached after {tried} attempts")
            break

        if on_progress:
            on_progress(attempt + 1, attempts, f'Attempt {attempt + 1}/{attempts}...')

        grid = run_attempt(units, classes, days, max_periods, rng, rooms, lab_marker)
        tried = attempt + 1
        if grid is not None:
            logger.info(f"Placed {len(units)} lessons on attempt {tried}")
            return grid, tried
        logger.debug(f"Attempt {tried} failed")

    diagnostics = {'totalLessons': len(units)}
    overloaded = teacher_overload(units, classes, days, max_periods)
    if overloaded:
        diagnostics['teacherOverload'] = overloaded
    unassigned = sum(1 for u in units if u.teacher is None)
    if unassigned:
        diagnostics['lessonsWithoutTeacher'] = unassigned
    raise GenerationFailure(tried, diagnostics)


# Result assembly

def assemble_class_schedule(grid: OccupancyGrid, cls: ClassConfig, days: list[str]) -> list[TimetableDay]:
    """One class's week, each day cut down to that day's configured period count."""
    return [
        TimetableDay(day=day, slots=list(grid.cells[cls.name][day][:cls.periods_on(day)]))
        for day in days
    ]


def assemble_schedule(grid: OccupancyGrid, classes: list[ClassConfig], days: list[str]) -> dict[str, list[TimetableDay]]:
    return {cls.name: assemble_class_schedule(grid, cls, days) for cls in classes}


def build_teacher_schedules(grid: OccupancyGrid) -> dict:
    """Teacher view of the grid: teacher -> day -> period -> [class, subject] or None."""
    teacher_schedules = {}
    for class_name, days in grid.cells.items():
        for day, slots in days.items():
            for slot in slots:
                if slot.teacher is None:
                    continue
                if slot.teacher not in teacher_schedules:
                    teacher_schedules[slot.teacher] = {
                        d: {p: None for p in range(1, grid.max_periods + 1)} for d in grid.days
                    }
                teacher_schedules[slot.teacher][day][slot.period] = [class_name, slot.subject]
    return teacher_schedules


def compute_teacher_stats(teacher_schedules: dict) -> list[TeacherStat]:
    """Compute statistics for each teacher."""
    stats = []
    for teacher, schedule in sorted(teacher_schedules.items()):
        teaching = 0
        free = 0
        classes = set()
        per_day = Counter()
        for day, periods in schedule.items():
            for cell in periods.values():
                if cell is None:
                    free += 1
                else:
                    teaching += 1
                    per_day[day] += 1
                    classes.add(cell[0])
        stats.append(TeacherStat(
            teacher=teacher,
            teaching=teaching,
            free=free,
            classes=len(classes),
            busiest_day=per_day.most_common(1)[0][0] if per_day else None,
        ))
    return stats


def generate_timetable(
    subjects: list[dict],
    teachers: list[dict],
    classes: list[dict],
    settings: dict = None,
    seed: Optional[int] = None,
    max_time_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    on_progress=None,
) -> dict:
    """
    Main entry point for timetable generation.

    Args:
        subjects: List of subject dicts with name, abbreviation, isLab
        teachers: List of teacher dicts with name, subjects
        classes: List of class dicts with name, periodsPerDay, subjectsAssigned
        settings: Optional dict with days, maxPeriods, rooms, attempts, labMarker
        seed: Seed for the random source; None gives a different timetable each run
        max_time_seconds: Optional time budget for all attempts
        cancel_event: Optional threading.Event that stops further attempts
        on_progress: Optional callback(current, total, message)

    Returns:
        Dict with status, message, timetables (per class), timetable (first class),
        teacherSchedules, teacherStats, attemptsUsed, elapsedSeconds

    Raises:
        ConfigurationError if the configuration is inconsistent
        GenerationFailure if every attempt failed
    """
    start_time = time.time()
    opts = parse_settings(settings)
    subject_objs = parse_subjects(subjects)
    teacher_objs = parse_teachers(teachers)
    class_objs = parse_classes(classes)

    validate_config(class_objs, opts.days, opts.max_periods, subject_objs, teacher_objs)

    units = expand_assignments(class_objs, subject_objs)
    logger.info(f"Scheduling {len(units)} lessons for {len(class_objs)} classes "
                f"({len(opts.days)} days x {opts.max_periods} periods, {opts.attempts} attempts)")

    grid, attempts_used = schedule_units(
        units,
        class_objs,
        days=opts.days,
        max_periods=opts.max_periods,
        attempts=opts.attempts,
        rng=random.Random(seed),
        rooms=opts.rooms,
        lab_marker=opts.lab_marker,
        max_time_seconds=max_time_seconds,
        cancel_event=cancel_event,
        on_progress=on_progress,
    )

    schedules = assemble_schedule(grid, class_objs, opts.days)
    timetables = {
        name: [d.as_dict() for d in week]
        for name, week in schedules.items()
    }
    teacher_schedules = build_teacher_schedules(grid)
    stats = compute_teacher_stats(teacher_schedules)

    elapsed = time.time() - start_time
    return {
        'status': 'success',
        'message': f'Timetable generated for {len(class_objs)} classes in {attempts_used} attempts ({elapsed:.2f}s)',
        'attemptsUsed': attempts_used,
        'timetables': timetables,
        'timetable': timetables[class_objs[0].name],
        'teacherSchedules': teacher_schedules,
        'teacherStats': [
            {
                'teacher': s.teacher,
                'teaching': s.teaching,
                'free': s.free,
                'classes': s.classes,
                'busiestDay': s.busiest_day,
            }
            for s in stats
        ],
        'elapsedSeconds': elapsed,
    }
