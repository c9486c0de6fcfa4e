"""
Replication sequence arithmetic.

Daily diffs on the replication server are numbered consecutively from the
first day one was published (the epoch), so the diff for a calendar day is a
pure function of that day. Sequence numbers are zero-padded to 9 digits and
split 3+3+3 into the remote path, e.g. ``000/004/123.osc.gz``.
"""

from datetime import date, timedelta

from ..config.settings import DEFAULT_REPLICATION_EPOCH

EPOCH = date.fromisoformat(DEFAULT_REPLICATION_EPOCH)
SEQUENCE_DIGITS = 9
ONE_DAY = timedelta(days=1)


def sequence_for_day(day: date, epoch: date = EPOCH) -> str:
    """
    Sequence number of the daily diff published for a day.

    Raises:
        ValueError: If the day predates the epoch
    """
    if day < epoch:
        raise ValueError(f"No daily diff exists before {epoch.isoformat()} (requested {day.isoformat()})")
    return str((day - epoch).days + 1).zfill(SEQUENCE_DIGITS)


def day_for_sequence(sequence: str, epoch: date = EPOCH) -> date:
    """Inverse of sequence_for_day."""
    if len(sequence) != SEQUENCE_DIGITS or not sequence.isdigit() or int(sequence) < 1:
        raise ValueError(f"Invalid sequence number: {sequence!r}")
    return epoch + timedelta(days=int(sequence) - 1)


def changefile_path(sequence: str) -> str:
    """Remote path of a daily diff relative to the replication base URL."""
    if len(sequence) != SEQUENCE_DIGITS or not sequence.isdigit():
        raise ValueError(f"Invalid sequence number: {sequence!r}")
    return f"{sequence[0:3]}/{sequence[3:6]}/{sequence[6:9]}.osc.gz"


def next_day_to_process(last_applied: date, epoch: date = EPOCH) -> date:
    """
    Day following the cursor.

    A cursor more than one day before the epoch is clamped to the day before
    the epoch, so that catching up starts at the first published diff.
    """
    if last_applied < epoch - ONE_DAY:
        return epoch - ONE_DAY
    return last_applied + ONE_DAY


def is_up_to_date(last_applied: date, today: date) -> bool:
    """Today's diff is never published yet, so one day behind counts as current."""
    return (today - last_applied).days <= 1


class SequenceClock:
    """Sequence arithmetic bound to one replication epoch."""

    def __init__(self, epoch: date = EPOCH):
        self.epoch = epoch

    def sequence_for_day(self, day: date) -> str:
        return sequence_for_day(day, self.epoch)

    def day_for_sequence(self, sequence: str) -> date:
        return day_for_sequence(sequence, self.epoch)

    def next_day_to_process(self, last_applied: date) -> date:
        return next_day_to_process(last_applied, self.epoch)

    def replication_day(self, last_applied: date) -> date:
        """Day whose diff the next step fetches; never earlier than the epoch."""
        return max(self.next_day_to_process(last_applied), self.epoch)

    @staticmethod
    def is_up_to_date(last_applied: date, today: date) -> bool:
        return is_up_to_date(last_applied, today)

    def days_behind(self, last_applied: date, today: date) -> int:
        """Diffs that could still be applied before the cursor is current."""
        return max((today - ONE_DAY - self.replication_day(last_applied)).days + 1, 0)
