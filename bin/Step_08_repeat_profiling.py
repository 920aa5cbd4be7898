#!/usr/bin/env python3
"""
Step_08_repeat_profiling.py: Estimate the repeat content of a genome from raw
reads.

Stages (in order). A run resumes at the first stage whose output is missing
(or at --start_stage) and re-runs every stage after it:
    reads_stats  fastq-stats on every read file -> total sequenced bases
    assemble     REPdenovo assembly of high-frequency k-mers into repeat contigs
                 (REPdenovo drives jellyfish and velvet itself)
    classify     RepeatMasker on the repeat contigs -> class/family per contig
    map          bwa mem of the reads back onto the contigs, samtools sort/index
    coverage     bedtools coverage -mean over each contig
    profile      copy number and repeat bp per contig, summarised per class

Copy number:
    single-copy depth = total read bases / genome size
    copy number       = contig mean depth / single-copy depth
    repeat bp         = contig length x copy number

Usage:
    python Step_08_repeat_profiling.py \\
        --reads sample_R1.fq.gz sample_R2.fq.gz \\
        --genome_size 1200000000 \\
        --repdenovo_dir /opt/REPdenovo \\
        --repeatmasker_species arabidopsis \\
        --output_dir repeat_profile --prefix sample --threads 16
"""

import os
import sys
import shutil
import argparse
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import pysam
import matplotlib
matplotlib.use("Agg")  # Use Agg backend for headless environments
import matplotlib.pyplot as plt
import matplotlib as mpl

mpl.rcParams['pdf.fonttype'] = 42

__version__ = "1.0.0"

STAGES = ["reads_stats", "assemble", "classify", "map", "coverage", "profile"]

RM_OUT_COLUMNS = ["sw_score", "perc_div", "perc_del", "perc_ins", "query", "q_begin", "q_end",
                  "q_left", "strand", "repeat", "class_family"]


@dataclass
class RepeatProfileConfig:
    reads: List[str]
    genome_size: int
    output_dir: str
    prefix: str
    repdenovo_dir: str
    threads: int = 4
    repeatmasker_species: Optional[str] = None
    repeatmasker_lib: Optional[str] = None
    jellyfish: str = "jellyfish"
    velvet_dir: str = ""
    bwa: str = "bwa"
    samtools: str = "samtools"
    bedtools: str = "bedtools"
    fastq_stats: str = "fastq-stats"
    kmer_size: int = 31
    min_repeat_freq: int = 3
    min_contig_length: int = 100
    read_length: int = 150
    insert_size: int = 500
    insert_sd: int = 50
    start_stage: Optional[str] = None
    paths: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        out = self.output_dir
        self.paths = {
            "reads_stats": os.path.join(out, f"{self.prefix}_reads_stats.tsv"),
            "repdenovo_dir": os.path.join(out, "repdenovo"),
            "repdenovo_config": os.path.join(out, "repdenovo", "config.txt"),
            "repdenovo_reads": os.path.join(out, "repdenovo", "reads.txt"),
            "assemble": os.path.join(out, "repdenovo", "contigs.fa"),
            "repeatmasker_dir": os.path.join(out, "repeatmasker"),
            "classify": os.path.join(out, "repeatmasker", "contigs.fa.out"),
            "bwa_index": os.path.join(out, "bwa", "contigs"),
            "map": os.path.join(out, "bwa", f"{self.prefix}.contigs.sorted.bam"),
            "contig_bed": os.path.join(out, "coverage", "contigs.bed"),
            "coverage": os.path.join(out, "coverage", f"{self.prefix}.contigs.mean_depth.txt"),
            "profile": os.path.join(out, f"{self.prefix}_repeat_class_profile.tsv"),
            "contig_profile": os.path.join(out, f"{self.prefix}_repeat_contig_profile.tsv"),
        }


def setup_logging(log_path: str) -> logging.Logger:
    logger = logging.getLogger('repeat_profiling')
    logger.handlers.clear()
    logger.setLevel(logging.INFO)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_handler = logging.FileHandler(log_path, mode='w')
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


def remove_outputs(paths: Sequence[str]) -> None:
    for path in paths:
        if path and os.path.exists(path):
            os.remove(path)


def run_command(cmd: Sequence[str], logger: logging.Logger, stdout_path: Optional[str] = None,
                cleanup: Sequence[str] = ()) -> str:
    """
    Run one external command; on failure log its error output, delete the
    files listed in cleanup and exit.

    stdout_path is written through '<stdout_path>.tmp' and only renamed into
    place when the command succeeds.

    Returns:
        Captured stdout (empty when redirected to stdout_path)
    """
    cmd = [str(c) for c in cmd]
    logger.info(f"Running: {' '.join(cmd)}")
    tmp_path = stdout_path + ".tmp" if stdout_path else None
    try:
        if stdout_path:
            with open(tmp_path, 'w') as out:
                subprocess.run(cmd, check=True, text=True, stdout=out, stderr=subprocess.PIPE)
            os.replace(tmp_path, stdout_path)
            return ""
        proc = subprocess.run(cmd, check=True, text=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        return proc.stdout
    except FileNotFoundError:
        logger.error(f"{cmd[0]} not found in PATH.")
        remove_outputs([tmp_path, *cleanup])
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        logger.error(f"{os.path.basename(cmd[0])} failed (exit {e.returncode}): {e.stderr}")
        remove_outputs([tmp_path, *cleanup])
        sys.exit(1)


def stages_to_run(config: RepeatProfileConfig) -> List[str]:
    """
    The first stage whose output is missing (or --start_stage, if earlier) and
    every stage after it; later outputs depend on the re-run stage.
    """
    first = len(STAGES)
    for i, stage in enumerate(STAGES):
        if not os.path.exists(config.paths[stage]):
            first = i
            break
    if config.start_stage:
        first = min(first, STAGES.index(config.start_stage))
    return STAGES[first:]

###############################################################################
# Stage: reads_stats
###############################################################################


def parse_fastq_stats(text: str) -> Dict[str, float]:
    """Parse fastq-stats 'key<TAB>value' output into a dict of numbers."""
    stats = {}
    for line in text.splitlines():
        if '\t' not in line:
            continue
        key, value = line.split('\t', 1)
        try:
            stats[key.strip()] = float(value.strip())
        except ValueError:
            continue
    return stats


def stage_reads_stats(config: RepeatProfileConfig, logger: logging.Logger) -> None:
    rows = []
    for path in config.reads:
        stats = parse_fastq_stats(run_command([config.fastq_stats, path], logger))
        if "total bases" not in stats:
            logger.error(f"fastq-stats reported no 'total bases' for {path}")
            sys.exit(1)
        rows.append({"file": path, "reads": int(stats.get("reads", 0)),
                     "bases": int(stats["total bases"]),
                     "mean_length": stats.get("len mean", np.nan)})
    pd.DataFrame(rows).to_csv(config.paths["reads_stats"], sep='\t', index=False)


def total_read_bases(config: RepeatProfileConfig) -> int:
    return int(pd.read_csv(config.paths["reads_stats"], sep='\t')["bases"].sum())

###############################################################################
# Stage: assemble
###############################################################################


def write_repdenovo_inputs(config: RepeatProfileConfig) -> None:
    """Write the REPdenovo configuration and reads list."""
    os.makedirs(config.paths["repdenovo_dir"], exist_ok=True)
    settings = [
        ("MIN_REPEAT_FREQ", config.min_repeat_freq),
        ("RANGE_ASM_FREQ_DEC", 2),
        ("RANGE_ASM_FREQ_GAP", 0.8),
        ("K_MIN", config.kmer_size),
        ("K_MAX", config.kmer_size + 20),
        ("K_INC", 10),
        ("K_DFT", config.kmer_size),
        ("READ_LENGTH", config.read_length),
        ("GENOME_LENGTH", config.genome_size),
        ("MIN_CONTIG_LENGTH", config.min_contig_length),
        ("ASM_NODE_LENGTH_OFFSET", -1),
        ("IS_DUPLICATE_REPEATS", 0.85),
        ("COV_DIFF_CUTOFF", 0.5),
        ("MIN_SUPPORT_PAIRS", 20),
        ("MIN_FULLY_MAP_RATIO", 0.2),
        ("TR_SIMILARITY", 0.85),
        ("TREADS", config.threads),
        ("BWA_PATH", shutil.which(config.bwa) or config.bwa),
        ("SAMTOOLS_PATH", shutil.which(config.samtools) or config.samtools),
        ("JELLYFISH_PATH", shutil.which(config.jellyfish) or config.jellyfish),
        ("VELVET_PATH", config.velvet_dir),
        ("OUTPUT_FOLDER", os.path.abspath(config.paths["repdenovo_dir"])),
        ("VERBOSE", 1),
    ]
    with open(config.paths["repdenovo_config"], 'w') as f:
        for key, value in settings:
            f.write(f"{key}   {value}\n")

    with open(config.paths["repdenovo_reads"], 'w') as f:
        for pair_index, path in enumerate(config.reads, start=1):
            f.write(f"{os.path.abspath(path)} {pair_index} {config.insert_size} {config.insert_sd}\n")


def stage_assemble(config: RepeatProfileConfig, logger: logging.Logger) -> None:
    contigs = config.paths["assemble"]
    # a previous assembly and its index are stale once this stage re-runs
    remove_outputs([contigs, contigs + ".fai"])
    write_repdenovo_inputs(config)
    run_command([sys.executable, os.path.join(config.repdenovo_dir, "main.py"),
                 "-c", "Assembly", "-g", config.paths["repdenovo_config"],
                 "-r", config.paths["repdenovo_reads"]], logger, cleanup=[contigs])
    if not os.path.exists(config.paths["assemble"]):
        logger.error(f"REPdenovo finished without writing {config.paths['assemble']}")
        sys.exit(1)

###############################################################################
# Stage: classify
###############################################################################


def parse_repeatmasker_out(path: str) -> pd.DataFrame:
    """
    Read a RepeatMasker .out table (three header lines, whitespace separated).
    Returns an empty table when RepeatMasker found no repeats.
    """
    rows = []
    with open(path, 'r') as f:
        for line in f:
            fields = line.split()
            if len(fields) < 11 or not fields[0].isdigit():
                continue
            rows.append(fields[:11])
    df = pd.DataFrame(rows, columns=RM_OUT_COLUMNS)
    for col in ("sw_score", "q_begin", "q_end"):
        df[col] = df[col].astype(int)
    return df


def classify_contigs(rm_hits: pd.DataFrame) -> pd.DataFrame:
    """
    Class and family of each contig = the class/family annotation covering the
    most contig bases.
    """
    if rm_hits.empty:
        return pd.DataFrame(columns=["contig", "repeat_class", "repeat_family"])
    hits = rm_hits.assign(masked_bp=rm_hits["q_end"] - rm_hits["q_begin"] + 1)
    best = (hits.groupby(["query", "class_family"])["masked_bp"].sum()
                .reset_index()
                .sort_values(["query", "masked_bp"], ascending=[True, False])
                .drop_duplicates("query"))
    split = best["class_family"].str.split('/', n=1, expand=True)
    return pd.DataFrame({
        "contig": best["query"].values,
        "repeat_class": split[0].values,
        "repeat_family": split[1].fillna(split[0]).values if split.shape[1] > 1 else split[0].values,
    })


def stage_classify(config: RepeatProfileConfig, logger: logging.Logger) -> None:
    os.makedirs(config.paths["repeatmasker_dir"], exist_ok=True)
    cmd = ["RepeatMasker", "-pa", config.threads, "-dir", config.paths["repeatmasker_dir"]]
    if config.repeatmasker_lib:
        cmd += ["-lib", config.repeatmasker_lib]
    else:
        cmd += ["-species", config.repeatmasker_species]
    cmd.append(config.paths["assemble"])
    remove_outputs([config.paths["classify"]])
    run_command(cmd, logger, cleanup=[config.paths["classify"]])
    if not os.path.exists(config.paths["classify"]):
        logger.error(f"RepeatMasker finished without writing {config.paths['classify']}")
        sys.exit(1)

###############################################################################
# Stage: map
###############################################################################


def stage_map(config: RepeatProfileConfig, logger: logging.Logger) -> None:
    os.makedirs(os.path.dirname(config.paths["bwa_index"]), exist_ok=True)
    bam_path = config.paths["map"]
    tmp_bam = bam_path + ".tmp.bam"
    remove_outputs([bam_path, bam_path + ".bai"])
    run_command([config.bwa, "index", "-p", config.paths["bwa_index"], config.paths["assemble"]], logger)

    bwa_cmd = [config.bwa, "mem", "-t", str(config.threads), config.paths["bwa_index"], *config.reads]
    sort_cmd = [config.samtools, "sort", "-@", str(config.threads), "-o", tmp_bam, "-"]
    bwa_log = bam_path + ".bwa_mem.log"
    logger.info(f"Running: {' '.join(bwa_cmd)} | {' '.join(sort_cmd)}")
    try:
        # bwa mem is verbose on stderr; send it to a file so the pipe cannot fill up
        with open(bwa_log, 'w') as log_handle:
            bwa = subprocess.Popen(bwa_cmd, stdout=subprocess.PIPE, stderr=log_handle)
            sort = subprocess.run(sort_cmd, stdin=bwa.stdout, stdout=subprocess.PIPE,
                                  stderr=subprocess.PIPE, text=True)
            bwa.stdout.close()
            bwa.wait()
    except FileNotFoundError as e:
        logger.error(f"{e.filename} not found in PATH.")
        remove_outputs([tmp_bam])
        sys.exit(1)
    if bwa.returncode != 0:
        with open(bwa_log, 'r') as f:
            bwa_err = f.read()
        logger.error(f"bwa mem failed (exit {bwa.returncode}): {bwa_err[-2000:]}")
        remove_outputs([tmp_bam])
        sys.exit(1)
    if sort.returncode != 0:
        logger.error(f"samtools sort failed (exit {sort.returncode}): {sort.stderr}")
        remove_outputs([tmp_bam])
        sys.exit(1)

    os.replace(tmp_bam, bam_path)
    run_command([config.samtools, "index", bam_path], logger, cleanup=[bam_path, bam_path + ".bai"])

###############################################################################
# Stage: coverage
###############################################################################


def contig_lengths(fasta_path: str) -> pd.DataFrame:
    """Contig names and lengths from the FASTA index (built if missing)."""
    if not os.path.exists(fasta_path + ".fai"):
        pysam.faidx(fasta_path)
    with pysam.FastaFile(fasta_path) as fasta:
        return pd.DataFrame({"contig": list(fasta.references), "length": list(fasta.lengths)})


def stage_coverage(config: RepeatProfileConfig, logger: logging.Logger) -> None:
    os.makedirs(os.path.dirname(config.paths["contig_bed"]), exist_ok=True)
    lengths = contig_lengths(config.paths["assemble"])
    bed = pd.DataFrame({"chrom": lengths["contig"], "start": 0, "end": lengths["length"]})
    bed.to_csv(config.paths["contig_bed"], sep='\t', index=False, header=False)
    run_command([config.bedtools, "coverage", "-a", config.paths["contig_bed"],
                 "-b", config.paths["map"], "-mean"], logger, stdout_path=config.paths["coverage"])


def read_mean_depth(path: str) -> pd.DataFrame:
    df = pd.read_csv(path, sep='\t', header=None, names=["contig", "start", "end", "mean_depth"])
    return df[["contig", "mean_depth"]]

###############################################################################
# Stage: profile
###############################################################################


def build_contig_profile(lengths: pd.DataFrame, depth: pd.DataFrame, classes: pd.DataFrame,
                         total_bases: int, genome_size: int) -> pd.DataFrame:
    """Per-contig copy number and repeat bp; unclassified contigs become 'Unknown'."""
    if genome_size <= 0:
        raise ValueError(f"Genome size must be positive, got {genome_size}")
    single_copy_depth = total_bases / genome_size
    if single_copy_depth <= 0:
        raise ValueError("Total read bases is zero; cannot estimate single-copy depth")

    profile = lengths.merge(depth, on="contig", how="left").merge(classes, on="contig", how="left")
    profile["mean_depth"] = profile["mean_depth"].fillna(0.0)
    profile["repeat_class"] = profile["repeat_class"].fillna("Unknown")
    profile["repeat_family"] = profile["repeat_family"].fillna("Unknown")
    profile["copy_number"] = profile["mean_depth"] / single_copy_depth
    profile["repeat_bp"] = profile["length"] * profile["copy_number"]
    profile["genome_fraction"] = profile["repeat_bp"] / genome_size
    return profile


def summarize_by_class(profile: pd.DataFrame) -> pd.DataFrame:
    summary = (profile.groupby(["repeat_class", "repeat_family"])
                      .agg(contigs=("contig", "count"),
                           contig_bp=("length", "sum"),
                           repeat_bp=("repeat_bp", "sum"),
                           genome_fraction=("genome_fraction", "sum"))
                      .reset_index()
                      .sort_values("repeat_bp", ascending=False))
    return summary.reset_index(drop=True)


def plot_class_profile(summary: pd.DataFrame, prefix: str, output_dir: str):
    by_class = summary.groupby("repeat_class")["genome_fraction"].sum().sort_values()
    fig, ax = plt.subplots(figsize=(5, max(2, 0.3 * len(by_class) + 1)), dpi=300)
    ax.barh(by_class.index, by_class.values * 100, color="#FF7F0E", edgecolor="white")
    ax.set_xlabel("Genome fraction (%)", fontsize=7)
    ax.tick_params(axis='both', labelsize=6)
    ax.set_title(f"Repeat content by class\n{prefix}", fontsize=8)
    ax.spines['top'].set_visible(False)
    ax.spines['right'].set_visible(False)

    pdf_path = os.path.join(output_dir, f"{prefix}_repeat_class_profile.pdf")
    png_path = os.path.join(output_dir, f"{prefix}_repeat_class_profile.png")
    fig.savefig(pdf_path, format='pdf', bbox_inches='tight')
    fig.savefig(png_path, format='png', bbox_inches='tight')
    plt.close(fig)
    return pdf_path, png_path


def stage_profile(config: RepeatProfileConfig, logger: logging.Logger) -> None:
    lengths = contig_lengths(config.paths["assemble"])
    depth = read_mean_depth(config.paths["coverage"])
    classes = classify_contigs(parse_repeatmasker_out(config.paths["classify"]))
    total_bases = total_read_bases(config)

    try:
        profile = build_contig_profile(lengths, depth, classes, total_bases, config.genome_size)
    except ValueError as e:
        logger.error(f"{e}")
        sys.exit(1)
    summary = summarize_by_class(profile)

    profile.to_csv(config.paths["contig_profile"], sep='\t', index=False, float_format='%.4f')
    pdf_path, png_path = plot_class_profile(summary, config.prefix, config.output_dir)
    # the class table marks the stage as done, so it is written last
    summary.to_csv(config.paths["profile"], sep='\t', index=False, float_format='%.6f')

    logger.info(f"Single-copy depth: {total_bases / config.genome_size:.2f}x")
    logger.info(f"Estimated repeat content: {profile['repeat_bp'].sum():,.0f} bp "
                f"({profile['genome_fraction'].sum() * 100:.2f}% of genome)")
    logger.info(f"Class profile written to {config.paths['profile']}; plots {pdf_path}, {png_path}")


STAGE_FUNCTIONS = {
    "reads_stats": stage_reads_stats,
    "assemble": stage_assemble,
    "classify": stage_classify,
    "map": stage_map,
    "coverage": stage_coverage,
    "profile": stage_profile,
}


def run_pipeline(config: RepeatProfileConfig, logger: logging.Logger) -> List[str]:
    selected = stages_to_run(config)
    for stage in STAGES:
        if stage not in selected:
            logger.info(f"--- Stage {stage}: output exists, skipping ---")
            continue
        logger.info(f"--- Stage {stage} ---")
        STAGE_FUNCTIONS[stage](config, logger)
    return selected


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=f'repeat_profiling v{__version__}: repeat content from reads via REPdenovo + RepeatMasker',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--reads', nargs='+', required=True, help='FASTQ file(s); two files are used as a pair.')
    parser.add_argument('--genome_size', type=int, required=True, help='Haploid genome size in bp.')
    parser.add_argument('--output_dir', required=True, help='Output directory.')
    parser.add_argument('--prefix', required=True, help='Sample name used in output file names.')
    parser.add_argument('--repdenovo_dir', required=True, help='REPdenovo installation (contains main.py).')
    parser.add_argument('--threads', type=int, default=4, help='Threads for every tool (default: 4).')

    rm_group = parser.add_mutually_exclusive_group(required=True)
    rm_group.add_argument('--repeatmasker_species', help='RepeatMasker -species value.')
    rm_group.add_argument('--repeatmasker_lib', help='Custom RepeatMasker library (FASTA).')

    tools = parser.add_argument_group('External tools')
    tools.add_argument('--jellyfish', default='jellyfish', help='jellyfish executable (used by REPdenovo).')
    tools.add_argument('--velvet_dir', default='', help='Directory with velveth/velvetg (used by REPdenovo).')
    tools.add_argument('--bwa', default='bwa', help='bwa executable.')
    tools.add_argument('--samtools', default='samtools', help='samtools executable.')
    tools.add_argument('--bedtools', default='bedtools', help='bedtools executable.')
    tools.add_argument('--fastq_stats', default='fastq-stats', help='fastq-stats executable (ea-utils).')

    asm = parser.add_argument_group('Assembly')
    asm.add_argument('--kmer_size', type=int, default=31, help='Smallest k-mer for REPdenovo (default: 31).')
    asm.add_argument('--min_repeat_freq', type=int, default=3, help='REPdenovo MIN_REPEAT_FREQ (default: 3).')
    asm.add_argument('--min_contig_length', type=int, default=100, help='Minimum contig length (default: 100).')
    asm.add_argument('--read_length', type=int, default=150, help='Read length (default: 150).')
    asm.add_argument('--insert_size', type=int, default=500, help='Library insert size (default: 500).')
    asm.add_argument('--insert_sd', type=int, default=50, help='Insert size SD (default: 50).')

    parser.add_argument('--start_stage', choices=STAGES, default=None,
                        help='Re-run from this stage on, even if outputs exist.')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args(argv)
    if args.genome_size <= 0:
        parser.error('--genome_size must be positive')
    if len(args.reads) > 2:
        parser.error('--reads takes one file or one pair of files')
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    os.makedirs(args.output_dir, exist_ok=True)
    logger = setup_logging(os.path.join(args.output_dir, f"{args.prefix}_repeat_profiling.log"))

    for path in args.reads:
        if not os.path.isfile(path):
            logger.error(f"Reads file not found: {path}")
            return 1
    if not os.path.isfile(os.path.join(args.repdenovo_dir, "main.py")):
        logger.error(f"REPdenovo main.py not found in {args.repdenovo_dir}")
        return 1

    config = RepeatProfileConfig(
        reads=args.reads, genome_size=args.genome_size, output_dir=args.output_dir,
        prefix=args.prefix, repdenovo_dir=args.repdenovo_dir, threads=args.threads,
        repeatmasker_species=args.repeatmasker_species, repeatmasker_lib=args.repeatmasker_lib,
        jellyfish=args.jellyfish, velvet_dir=args.velvet_dir, bwa=args.bwa,
        samtools=args.samtools, bedtools=args.bedtools, fastq_stats=args.fastq_stats,
        kmer_size=args.kmer_size, min_repeat_freq=args.min_repeat_freq,
        min_contig_length=args.min_contig_length, read_length=args.read_length,
        insert_size=args.insert_size, insert_sd=args.insert_sd, start_stage=args.start_stage,
    )
    run_pipeline(config, logger)
    logger.info("Repeat profiling finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
