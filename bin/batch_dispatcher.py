#!/usr/bin/env python3
"""
batch_dispatcher.py: Split a job into work units, run them in fixed-size batches
of external processes, and merge the per-unit outputs.

Shared by the multi-thread runners (Step_01 freebayes, Step_03 Structure) and the
standalone merge script (Step_02).

Work flow:
    1. Partition: a reference description (sequence name + length) or a
       file x parameter x replicate grid becomes an ordered list of WorkUnits.
       Each unit carries its full argument vector and the path it writes to.
    2. Dispatch: units are sliced into batches of N in original order. Every
       unit in a batch runs as its own subprocess on a thread pool; the next
       batch starts only after all units of the current one have finished.
       A failing unit is logged and counted, never retried.
    3. Merge: per-unit output files are concatenated in unit order. Comment
       lines (default '#') are kept from the first file only.

Output paths:
    unit output:   <output_dir>/<input_basename>_<normalized_slot>.<ext>
    merged output: <output_dir>/<input_basename>.<ext>
"""

import os
import re
import sys
import time
import logging
import itertools
import subprocess
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

__version__ = "1.0.0"

logger = logging.getLogger('batch_dispatcher')

###############################################################################
# Errors and data types
###############################################################################


class PartitionError(ValueError):
    """Raised when the input domain cannot be split into work units."""


@dataclass(frozen=True)
class WorkUnit:
    """One external command and the file it is expected to write."""
    ordinal: int
    slot: str
    command: Tuple[str, ...]
    output_path: str


@dataclass
class UnitResult:
    ordinal: int
    slot: str
    succeeded: bool
    returncode: Optional[int] = None
    diagnostic: str = ""
    batch: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0


@dataclass
class DispatchConfig:
    """Options shared by the partitioner, the dispatcher and the merger."""
    threads: int = 4
    comment_marker: str = "#"
    skip_missing: bool = False
    keep_shards: bool = False

    def __post_init__(self):
        if self.threads < 1:
            raise PartitionError(f"Thread count must be >= 1, got {self.threads}")
        if not self.comment_marker:
            raise PartitionError("Comment marker must not be empty")


@dataclass
class DispatchReport:
    results: List[UnitResult] = field(default_factory=list)
    batch_count: int = 0

    @property
    def succeeded(self) -> List[UnitResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> List[UnitResult]:
        return [r for r in self.results if not r.succeeded]

    def summary(self) -> str:
        return (f"{len(self.results)} units executed across {self.batch_count} batches "
                f"({len(self.failed)} failed)")


def setup_logging(log_path: Optional[str] = None, name: str = 'batch_dispatcher') -> logging.Logger:
    """
    Configure a named logger writing to stdout and, optionally, to a file.

    Args:
        log_path: Path to log file (None for console only)
        name: Logger name

    Returns:
        Configured logger instance
    """
    log = logging.getLogger(name)
    log.handlers.clear()
    log.setLevel(logging.INFO)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(threadName)s]: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    log.addHandler(console_handler)

    if log_path:
        file_handler = logging.FileHandler(log_path, mode='w')
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)

    return log

###############################################################################
# Partitioner
###############################################################################


def bin_intervals(length: int, bin_size: int) -> List[Tuple[int, int]]:
    """
    Split a sequence of the given length into consecutive bins.

    The first bin is (0, bin_size); every following bin starts one past the
    previous end, e.g. length=25, bin_size=10 -> (0, 10), (11, 20), (21, 25).
    An exact multiple of bin_size yields length // bin_size bins.
    """
    if bin_size <= 0:
        raise PartitionError(f"Bin size must be positive, got {bin_size}")
    if length <= 0:
        raise PartitionError(f"Sequence length must be positive, got {length}")

    bins = []
    n_bins = -(-length // bin_size)
    for k in range(n_bins):
        start = 0 if k == 0 else k * bin_size + 1
        end = min((k + 1) * bin_size, length)
        bins.append((start, end))
    return bins


def region_slots(references: Iterable[Tuple[str, int]], bin_size: int) -> List[str]:
    """Region strings '<name>:<start>-<end>' in reference order, then bin order."""
    slots = []
    for name, length in references:
        if not name:
            raise PartitionError("Reference sequence without a name")
        try:
            bins = bin_intervals(int(length), bin_size)
        except PartitionError as e:
            raise PartitionError(f"{name}: {e}") from e
        slots.extend(f"{name}:{start}-{end}" for start, end in bins)
    if not slots:
        raise PartitionError("No reference sequences to partition")
    return slots


def normalize_slot(slot: str) -> str:
    # ':' and '-' (and anything else outside [A-Za-z0-9_.]) become '_'
    return re.sub(r'[^A-Za-z0-9_.]', '_', str(slot))


def parameter_grid(inputs: Sequence[str], parameters: Sequence, replicates: int) -> List[Tuple[str, object, int]]:
    """
    Cross product of input files x parameter values x replicate index (1-based).

    Raises:
        PartitionError: if any of the three sets is empty.
    """
    if not inputs:
        raise PartitionError("No input files given")
    if not parameters:
        raise PartitionError("No parameter values given")
    if replicates < 1:
        raise PartitionError(f"Replicate count must be >= 1, got {replicates}")
    return list(itertools.product(inputs, parameters, range(1, replicates + 1)))


PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def fill_placeholders(arg: str, values: Dict[str, str]) -> str:
    """Replace {name} tokens whose name is in values; any other braces are left as written."""
    return PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), arg)


@dataclass
class UnitTemplate:
    """
    Command-line skeleton with a single varying slot.

    Arguments may contain the placeholders {slot}, {output} and {input}.
    {output} is the path handed to the program; programs that append their own
    suffix to it (Structure writes '<name>_f') declare it in result_suffix so
    that WorkUnit.output_path points at the file actually produced.
    """
    program: str
    args: Sequence[str]
    output_dir: str
    input_basename: str
    extension: str
    input_path: str = ""
    result_suffix: str = ""

    def output_path_for(self, slot: str) -> str:
        return self._program_output(slot) + self.result_suffix

    def merged_path(self) -> str:
        return os.path.join(self.output_dir, f"{self.input_basename}{self._ext()}")

    def render(self, ordinal: int, slot: str, **fields) -> WorkUnit:
        """Fill the placeholders for one slot; extra fields become extra placeholders."""
        program_output = self._program_output(slot)
        values = {"slot": slot, "output": program_output, "input": self.input_path}
        values.update((key, str(value)) for key, value in fields.items())
        command = [self.program]
        for arg in self.args:
            command.append(fill_placeholders(str(arg), values))
        return WorkUnit(ordinal=ordinal, slot=slot, command=tuple(command),
                        output_path=program_output + self.result_suffix)

    def _program_output(self, slot: str) -> str:
        name = f"{self.input_basename}_{normalize_slot(slot)}{self._ext()}"
        return os.path.join(self.output_dir, name)

    def _ext(self) -> str:
        return f".{self.extension.lstrip('.')}" if self.extension else ""


def partition(template: UnitTemplate, slots: Iterable[str]) -> List[WorkUnit]:
    """Build one WorkUnit per slot, numbered 1..V in slot order."""
    units = [template.render(ordinal, slot) for ordinal, slot in enumerate(slots, start=1)]
    check_unique_outputs(units)
    return units


def check_unique_outputs(units: Sequence[WorkUnit]) -> None:
    """Every unit must own a distinct output path; an empty unit list is an error."""
    if not units:
        raise PartitionError("Partitioning produced no work units")

    seen = {}
    for unit in units:
        if unit.output_path in seen:
            raise PartitionError(
                f"Slots '{seen[unit.output_path]}' and '{unit.slot}' map to the same output "
                f"{unit.output_path}"
            )
        seen[unit.output_path] = unit.slot

###############################################################################
# Dispatcher
###############################################################################


def make_batches(units: Sequence[WorkUnit], n: int) -> List[List[WorkUnit]]:
    """Contiguous slices of at most n units, in original order."""
    if n < 1:
        raise PartitionError(f"Batch size must be >= 1, got {n}")
    return [list(units[i:i + n]) for i in range(0, len(units), n)]


def run_unit(unit: WorkUnit, batch: int = 0) -> UnitResult:
    """Run a unit's command; failures are returned, not raised."""
    started = time.monotonic()
    try:
        proc = subprocess.run(list(unit.command), stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE, text=True)
    except OSError as e:
        return UnitResult(unit.ordinal, unit.slot, False, None, f"Failed to start {unit.command[0]}: {e}",
                          batch, started, time.monotonic())

    finished = time.monotonic()
    if proc.returncode != 0:
        return UnitResult(unit.ordinal, unit.slot, False, proc.returncode,
                          (proc.stderr or "").strip(), batch, started, finished)
    return UnitResult(unit.ordinal, unit.slot, True, 0, "", batch, started, finished)


class BatchDispatcher:
    """
    Run work units in sequential batches of config.threads concurrent processes.

    A batch is a barrier: batch k+1 is submitted only after every unit of
    batch k has returned, whether it succeeded or not.
    """

    def __init__(self, config: DispatchConfig, runner: Callable[[WorkUnit, int], UnitResult] = run_unit):
        self.config = config
        self.runner = runner

    def run(self, units: Sequence[WorkUnit]) -> DispatchReport:
        if not units:
            raise PartitionError("No work units to dispatch")

        for unit in units:
            out_dir = os.path.dirname(unit.output_path)
            if out_dir:
                os.makedirs(out_dir, exist_ok=True)

        batches = make_batches(units, self.config.threads)
        report = DispatchReport(batch_count=len(batches))
        logger.info(f"Dispatching {len(units)} units in {len(batches)} batches "
                    f"of up to {self.config.threads}")

        with ThreadPoolExecutor(max_workers=self.config.threads, thread_name_prefix='unit') as executor:
            for batch_no, batch in enumerate(batches, start=1):
                logger.info(f"Batch {batch_no}/{len(batches)}: units "
                            f"{batch[0].ordinal}-{batch[-1].ordinal}")
                futures = {executor.submit(self.runner, unit, batch_no): unit for unit in batch}
                wait(futures)
                for future, unit in futures.items():
                    report.results.append(self._collect(future, unit, batch_no))

        report.results.sort(key=lambda r: r.ordinal)
        logger.info(report.summary())
        return report

    def _collect(self, future, unit: WorkUnit, batch_no: int) -> UnitResult:
        try:
            result = future.result()
        except Exception as e:
            # A runner that raises still counts as a failed unit
            result = UnitResult(unit.ordinal, unit.slot, False, None, repr(e), batch_no)
        if not result.succeeded:
            logger.warning(f"Unit {unit.ordinal} ({unit.slot}) failed "
                           f"[exit {result.returncode}]: {result.diagnostic or 'no error output'}")
        return result

###############################################################################
# Merger
###############################################################################


def merge_outputs(paths: Sequence[str], merged_path: str, comment_marker: str = "#",
                  skip_missing: bool = False) -> int:
    """
    Concatenate per-unit output files in the given order.

    Every line of the first file is copied; later files lose their lines that
    start with comment_marker.

    Args:
        paths: Unit output files in unit order
        merged_path: Destination file
        comment_marker: Prefix of header/comment lines
        skip_missing: Skip absent files with a warning instead of failing

    Returns:
        Number of non-comment lines written

    Raises:
        FileNotFoundError: if a file is missing and skip_missing is False
    """
    data_lines = 0
    header_written = False
    # merged_path only appears once every input has been read
    tmp_path = merged_path + ".tmp"
    try:
        with open(tmp_path, 'w') as out:
            for path in paths:
                if skip_missing and not os.path.exists(path):
                    logger.warning(f"Skipping missing output {path}")
                    continue
                with open(path, 'r') as f:
                    for line in f:
                        is_comment = line.startswith(comment_marker)
                        if is_comment and header_written:
                            continue
                        if not line.endswith('\n'):
                            line += '\n'
                        out.write(line)
                        if not is_comment:
                            data_lines += 1
                header_written = True
        os.replace(tmp_path, merged_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
    return data_lines


def remove_shards(paths: Iterable[str]) -> int:
    removed = 0
    for path in paths:
        if os.path.exists(path):
            os.remove(path)
            removed += 1
    return removed
