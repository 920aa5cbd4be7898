#!/usr/bin/env python3
"""
Step_03_structure_multithread.py: Run Structure for every input x K x replicate
combination, --threads runs at a time, and summarise the likelihoods.

Usage:
    python Step_03_structure_multithread.py \\
        --input pop_A.str pop_B.str \\
        --mainparams mainparams \\
        --extraparams extraparams \\
        --k_values 1 2 3 4 5 6 \\
        --replicates 10 \\
        --threads 12 \\
        --output_dir structure_out

Each run writes <output_dir>/<input basename>_K<k>_rep<r>.out_f (Structure
appends '_f' to the -o name). When all runs are done the script collects the
"Estimated Ln Prob of Data" of every run into structure_runs_summary.tsv and
writes one <input basename>_K_summary.tsv per input with mean/sd LnP(D) and
Evanno's delta K.
"""

import os
import re
import sys
import shutil
import argparse
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

import batch_dispatcher
from batch_dispatcher import (
    BatchDispatcher,
    DispatchConfig,
    PartitionError,
    UnitTemplate,
    WorkUnit,
    check_unique_outputs,
    parameter_grid,
)

__version__ = "1.0.0"

RESULT_PATTERNS = {
    'LnPD': re.compile(r'Estimated Ln Prob of Data\s*=\s*(\S+)'),
    'mean_LnL': re.compile(r'Mean value of ln likelihood\s*=\s*(\S+)'),
    'var_LnL': re.compile(r'Variance of ln likelihood\s*=\s*(\S+)'),
}


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=f'structure_multithread v{__version__}: parallel Structure runs over K and replicates',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--input', nargs='+', required=True, help='Structure input file(s).')
    parser.add_argument('--mainparams', required=True, help='Structure mainparams file.')
    parser.add_argument('--extraparams', required=True, help='Structure extraparams file.')
    parser.add_argument('--k_values', nargs='+', type=int, required=True, help='K values to test.')
    parser.add_argument('--replicates', type=int, default=1, help='Runs per input and K (default: 1).')
    parser.add_argument('--threads', type=int, default=4, help='Structure runs at once (default: 4).')
    parser.add_argument('--output_dir', required=True, help='Directory for run outputs and summaries.')
    parser.add_argument('--structure', default='structure', help='Structure executable (default: structure).')
    parser.add_argument('--seed', type=int, default=12345,
                        help='Base random seed; run i uses seed + i (default: 12345).')
    parser.add_argument('--log', default=None,
                        help='Log file (default: <output_dir>/structure_multithread.log).')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)
    if args.threads < 1:
        parser.error('--threads must be >= 1')
    if any(k < 1 for k in args.k_values):
        parser.error('--k_values must all be >= 1')
    return args


def input_basename(path: str) -> str:
    return os.path.splitext(os.path.basename(path))[0]


def build_units(args: argparse.Namespace) -> List[WorkUnit]:
    """One unit per (input, K, replicate), ordered input-major, then K, then replicate."""
    templates: Dict[str, UnitTemplate] = {}
    for path in args.input:
        templates[path] = UnitTemplate(
            program=args.structure,
            args=["-m", args.mainparams, "-e", args.extraparams, "-K", "{k}",
                  "-i", "{input}", "-o", "{output}", "-D", "{seed}"],
            output_dir=args.output_dir,
            input_basename=input_basename(path),
            extension="out",
            input_path=path,
            result_suffix="_f",
        )

    units = []
    grid = parameter_grid(args.input, sorted(set(args.k_values)), args.replicates)
    for ordinal, (path, k, rep) in enumerate(grid, start=1):
        units.append(templates[path].render(ordinal, f"K{k}_rep{rep}", k=k, seed=args.seed + ordinal))
    check_unique_outputs(units)
    return units


def parse_structure_result(path: str) -> Dict[str, float]:
    """Read the likelihood lines of a Structure '_f' file; missing values are NaN."""
    values = {key: np.nan for key in RESULT_PATTERNS}
    with open(path, 'r') as f:
        for line in f:
            for key, pattern in RESULT_PATTERNS.items():
                match = pattern.search(line)
                if match:
                    try:
                        values[key] = float(match.group(1))
                    except ValueError:
                        pass
    return values


def collect_results(units: Sequence[WorkUnit], logger: logging.Logger) -> pd.DataFrame:
    rows = []
    slot_re = re.compile(r'^K(\d+)_rep(\d+)$')
    for unit in units:
        if not os.path.exists(unit.output_path):
            logger.warning(f"No Structure output for unit {unit.ordinal} ({unit.slot}): {unit.output_path}")
            continue
        k, rep = (int(x) for x in slot_re.match(unit.slot).groups())
        input_path = unit.command[unit.command.index("-i") + 1]
        row = {'input': input_basename(input_path), 'K': k, 'replicate': rep}
        row.update(parse_structure_result(unit.output_path))
        rows.append(row)
    return pd.DataFrame(rows, columns=['input', 'K', 'replicate', 'LnPD', 'mean_LnL', 'var_LnL'])


def summarize_k(runs: pd.DataFrame) -> pd.DataFrame:
    """
    Per-K mean and sd of LnP(D) for one input, plus Evanno's delta K:
        delta_K = |L(K+1) - 2 L(K) + L(K-1)| / sd(L(K))
    computed only where K-1 and K+1 were both run.
    """
    grouped = runs.groupby('K')['LnPD']
    summary = pd.DataFrame({
        'runs': grouped.count(),
        'mean_LnPD': grouped.mean(),
        'sd_LnPD': grouped.std(),
    }).sort_index()

    means = summary['mean_LnPD']
    delta = []
    for k in summary.index:
        if (k - 1) in means.index and (k + 1) in means.index:
            second_diff = abs(means[k + 1] - 2 * means[k] + means[k - 1])
            sd = summary.at[k, 'sd_LnPD']
            delta.append(second_diff / sd if sd and not np.isnan(sd) else np.nan)
        else:
            delta.append(np.nan)
    summary['delta_K'] = delta
    return summary.reset_index()


def write_summaries(runs: pd.DataFrame, output_dir: str, logger: logging.Logger) -> None:
    runs_path = os.path.join(output_dir, "structure_runs_summary.tsv")
    runs.sort_values(['input', 'K', 'replicate']).to_csv(runs_path, sep='\t', index=False)
    logger.info(f"Run summary written to {runs_path}")

    for name, group in runs.groupby('input'):
        k_path = os.path.join(output_dir, f"{name}_K_summary.tsv")
        summarize_k(group).to_csv(k_path, sep='\t', index=False, float_format='%.4f')
        logger.info(f"K summary written to {k_path}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    os.makedirs(args.output_dir, exist_ok=True)
    logger = batch_dispatcher.setup_logging(args.log or os.path.join(args.output_dir, "structure_multithread.log"))

    for path in [*args.input, args.mainparams, args.extraparams]:
        if not os.path.isfile(path):
            logger.error(f"File not found: {path}")
            return 1
    if shutil.which(args.structure) is None:
        logger.error(f"{args.structure} not found in PATH.")
        return 1

    try:
        units = build_units(args)
    except PartitionError as e:
        logger.error(f"Cannot build Structure runs: {e}")
        return 1
    logger.info(f"{len(args.input)} inputs x {len(set(args.k_values))} K values x "
                f"{args.replicates} replicates = {len(units)} runs")

    report = BatchDispatcher(DispatchConfig(threads=args.threads)).run(units)

    runs = collect_results(units, logger)
    if runs.empty:
        logger.error("No Structure results to summarise.")
        return 1
    write_summaries(runs, args.output_dir, logger)

    logger.info(report.summary())
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
