#!/usr/bin/env python3
"""
Merge per-region (or per-run) output files into one file, keeping the
comment/header block of the first file only.

Usage:
    python Step_02_merge_sharded_outputs.py \\
        --inputs out/s_Chr1_0_1000000.vcf out/s_Chr1_1000001_2000000.vcf \\
        --output out/s.vcf
"""

import sys
import argparse

import batch_dispatcher
from batch_dispatcher import merge_outputs


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Concatenate sharded outputs in the given order, de-duplicating header lines."
    )
    parser.add_argument("--inputs", nargs='+', required=True,
                        help="Shard files, in the order they should appear in the output.")
    parser.add_argument("--output", required=True, help="Merged output file.")
    parser.add_argument("--comment_marker", default="#",
                        help="Prefix of header lines kept only from the first file (default: '#').")
    parser.add_argument("--skip_missing", action="store_true",
                        help="Skip shards that do not exist instead of failing.")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logger = batch_dispatcher.setup_logging()
    try:
        n_lines = merge_outputs(args.inputs, args.output, args.comment_marker, args.skip_missing)
    except FileNotFoundError as e:
        logger.error(f"Missing shard: {e.filename}")
        return 1
    logger.info(f"Merged {len(args.inputs)} files into {args.output} ({n_lines} data lines)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
