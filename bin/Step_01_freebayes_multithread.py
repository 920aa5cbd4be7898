#!/usr/bin/env python3
"""
Step_01_freebayes_multithread.py: Call variants with freebayes in parallel by
splitting the reference into fixed-size regions.

Each region becomes one freebayes run writing its own VCF shard. Shards are run
in batches of --threads concurrent processes and then merged, in reference
order, into a single VCF with one header.

Usage:
    python Step_01_freebayes_multithread.py \\
        --input_bam sample.sorted.bam \\
        --reference_fasta genome.fa \\
        --output_dir freebayes_out \\
        --threads 8 \\
        --bin_size 1000000 \\
        --freebayes_args "--min-alternate-count 3 --ploidy 2"

Outputs:
    <output_dir>/<bam basename>.vcf                     merged calls
    <output_dir>/<bam basename>_<chr>_<start>_<end>.vcf  shards (--keep_shards)
    <output_dir>/<bam basename>_freebayes_multithread.log
"""

import os
import sys
import shlex
import shutil
import argparse
import logging
import subprocess
from typing import List, Optional, Sequence, Tuple

import pysam

import batch_dispatcher
from batch_dispatcher import (
    BatchDispatcher,
    DispatchConfig,
    PartitionError,
    UnitTemplate,
    merge_outputs,
    partition,
    region_slots,
    remove_shards,
)

__version__ = "1.0.0"


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=f'freebayes_multithread v{__version__}: run freebayes on reference bins in parallel',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  Whole genome, 1 Mb bins, 8 concurrent freebayes processes:
      %(prog)s --input_bam s.bam --reference_fasta ref.fa --output_dir out --threads 8

  Two chromosomes only, keep the per-region VCFs:
      %(prog)s --input_bam s.bam --reference_fasta ref.fa --output_dir out \\
        --chromosomes Chr1 Chr5 --keep_shards
        """
    )
    parser.add_argument('--input_bam', required=True, help='Coordinate-sorted BAM file.')
    parser.add_argument('--reference_fasta', required=True, help='Reference FASTA used for alignment.')
    parser.add_argument('--output_dir', required=True, help='Directory for shards, merged VCF and log.')
    parser.add_argument('--threads', type=int, default=4,
                        help='Number of freebayes processes run at once (default: 4).')
    parser.add_argument('--bin_size', type=int, default=1000000,
                        help='Region size in bp (default: 1,000,000).')
    parser.add_argument('--chromosomes', nargs='+', default=None,
                        help='Restrict calling to these reference sequences.')
    parser.add_argument('--freebayes', default='freebayes', help='freebayes executable (default: freebayes).')
    parser.add_argument('--freebayes_args', default='',
                        help='Extra freebayes options, quoted as one string.')
    parser.add_argument('--keep_shards', action='store_true', help='Keep per-region VCFs after merging.')
    parser.add_argument('--skip_missing', action='store_true',
                        help='Merge the shards that exist instead of aborting on a missing one.')
    parser.add_argument('--log', default=None,
                        help='Log file (default: <output_dir>/<bam basename>_freebayes_multithread.log).')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)
    if args.threads < 1:
        parser.error('--threads must be >= 1')
    if args.bin_size < 1:
        parser.error('--bin_size must be >= 1')
    return args


def read_reference_lengths(bam_path: str, chromosomes: Optional[Sequence[str]] = None) -> List[Tuple[str, int]]:
    """
    (name, length) of every @SQ line in the BAM header, in header order.

    Raises:
        PartitionError: if a requested chromosome is not in the header, or the
            header lists no sequences.
    """
    with pysam.AlignmentFile(bam_path, "rb", check_sq=False, require_index=False) as bam:
        references = list(zip(bam.references, bam.lengths))

    if chromosomes:
        known = {name for name, _ in references}
        unknown = [c for c in chromosomes if c not in known]
        if unknown:
            raise PartitionError(f"Sequences not in BAM header: {', '.join(unknown)}")
        wanted = set(chromosomes)
        references = [(name, length) for name, length in references if name in wanted]

    if not references:
        raise PartitionError(f"No @SQ sequences found in {bam_path}")
    return references


def bam_index_exists(bam_path: str) -> bool:
    stem = os.path.splitext(bam_path)[0]
    candidates = [bam_path + ".bai", stem + ".bai", bam_path + ".csi"]
    return any(os.path.exists(p) for p in candidates)


def ensure_bam_index(bam_path: str, logger: logging.Logger) -> None:
    if bam_index_exists(bam_path):
        return
    logger.info(f"No index found for {os.path.basename(bam_path)}, running samtools index")
    try:
        subprocess.run(["samtools", "index", bam_path], check=True, text=True,
                       stderr=subprocess.PIPE, stdout=subprocess.PIPE)
    except FileNotFoundError:
        logger.error("samtools not found in PATH.")
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        logger.error(f"samtools index failed: {e.stderr}")
        sys.exit(1)


def bam_basename(bam_path: str) -> str:
    """File name without its trailing .bam; shared by shard, merged VCF and log names."""
    base_name = os.path.basename(bam_path)
    if base_name.endswith('.bam'):
        base_name = base_name[:-4]
    return base_name


def build_template(args: argparse.Namespace) -> UnitTemplate:
    base_name = bam_basename(args.input_bam)
    extra = shlex.split(args.freebayes_args) if args.freebayes_args else []
    return UnitTemplate(
        program=args.freebayes,
        args=["-f", args.reference_fasta, "-r", "{slot}", *extra, "-v", "{output}", "{input}"],
        output_dir=args.output_dir,
        input_basename=base_name,
        extension="vcf",
        input_path=args.input_bam,
    )


def run(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Partition, dispatch and merge. Returns the process exit code."""
    config = DispatchConfig(threads=args.threads, skip_missing=args.skip_missing,
                            keep_shards=args.keep_shards)
    template = build_template(args)

    references = read_reference_lengths(args.input_bam, args.chromosomes)
    units = partition(template, region_slots(references, args.bin_size))
    logger.info(f"{len(references)} reference sequences split into {len(units)} regions "
                f"of up to {args.bin_size} bp")

    report = BatchDispatcher(config).run(units)

    merged_path = template.merged_path()
    shard_paths = [u.output_path for u in units]
    n_records = merge_outputs(shard_paths, merged_path, config.comment_marker, config.skip_missing)
    logger.info(f"Merged {len(shard_paths)} shards into {merged_path} ({n_records} records)")

    if not config.keep_shards:
        remove_shards(shard_paths)

    logger.info(report.summary())
    return 1 if report.failed else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    os.makedirs(args.output_dir, exist_ok=True)

    base_name = bam_basename(args.input_bam)
    log_path = args.log or os.path.join(args.output_dir, f"{base_name}_freebayes_multithread.log")
    logger = batch_dispatcher.setup_logging(log_path)

    if not os.path.isfile(args.input_bam):
        logger.error(f"Input BAM file not found at {args.input_bam}")
        return 1
    if not os.path.isfile(args.reference_fasta):
        logger.error(f"Reference FASTA not found at {args.reference_fasta}")
        return 1
    if shutil.which(args.freebayes) is None:
        logger.error(f"{args.freebayes} not found in PATH.")
        return 1

    ensure_bam_index(args.input_bam, logger)

    try:
        return run(args, logger)
    except PartitionError as e:
        logger.error(f"Cannot partition {args.input_bam}: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"Merge aborted, shard missing: {e.filename}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
