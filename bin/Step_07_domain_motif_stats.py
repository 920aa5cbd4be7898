#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Step_07_domain_motif_stats.py

Count occurrences of a sequence motif inside protein domains and summarise them
per domain.

Domain coordinates come from an InterProScan TSV (signature accession as the
domain name, or the InterPro entry with --domain_key interpro) or from a plain
TSV with the header: protein_id, domain, start, end (1-based, inclusive).
The motif is a Python regular expression or a PROSITE pattern such as
C-x(2,4)-C-x(3)-[LIVMFYWC]; matches may overlap.

Usage:
    python Step_07_domain_motif_stats.py --protein_fasta proteins.fa \\
        --domain_table interproscan.tsv --motif "C-x(2)-C" --output_prefix out/zinc_finger

Outputs:
    <prefix>_domain_instances.tsv   one row per domain instance
    <prefix>_domain_summary.tsv     one row per domain
    <prefix>_motif_fraction.pdf/png bar chart of the fraction of instances with the motif
    <prefix>_motif_logo.pdf/png     logo of the matched sites (only if all sites have one length)
"""

import os
import re
import sys
import argparse
import logging

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")  # Use Agg backend for headless environments
import matplotlib.pyplot as plt
import matplotlib as mpl
import logomaker
from Bio import SeqIO

mpl.rcParams['pdf.fonttype'] = 42

INSTANCE_COLUMNS = ["protein_id", "domain", "start", "end", "length",
                    "motif_count", "motif_positions", "motif_sites"]


def setup_logging(log_path=None):
    """Set up logging to console and, optionally, a file."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_path:
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        handlers=handlers,
        force=True
    )


def looks_like_prosite(pattern):
    return '-' in pattern or 'x' in pattern or pattern.endswith('.')


def prosite_to_regex(pattern):
    """
    Convert a PROSITE pattern to a Python regular expression.

    'x' -> '.', x(n,m) -> .{n,m}, {P} -> [^P], '<' / '>' -> anchors.
    """
    pattern = pattern.strip().rstrip('.')
    regex = []
    for element in pattern.split('-'):
        if not element:
            raise ValueError(f"Empty element in PROSITE pattern '{pattern}'")
        prefix = suffix = ''
        if element.startswith('<'):
            prefix, element = '^', element[1:]
        if element.endswith('>'):
            suffix, element = '$', element[:-1]

        match = re.fullmatch(r'(x|[A-Z]|\[[A-Z<>]+\]|\{[A-Z]+\})(?:\((\d+)(?:,(\d+))?\))?', element)
        if not match:
            raise ValueError(f"Cannot parse PROSITE element '{element}'")
        residue, low, high = match.groups()
        if residue == 'x':
            residue = '.'
        elif residue.startswith('{'):
            residue = f"[^{residue[1:-1]}]"
        elif residue.startswith('['):
            residue = residue.replace('>', '').replace('<', '')
        if low and high:
            residue += f"{{{low},{high}}}"
        elif low:
            residue += f"{{{low}}}"
        regex.append(prefix + residue + suffix)
    return "".join(regex)


def compile_motif(motif, syntax="auto"):
    """In auto mode a pattern that does not parse as PROSITE is used as a regex."""
    if syntax == "prosite":
        return re.compile(prosite_to_regex(motif))
    if syntax == "auto" and looks_like_prosite(motif):
        try:
            return re.compile(prosite_to_regex(motif))
        except ValueError:
            pass
    return re.compile(motif)


def find_motif(sequence, motif_re):
    """Overlapping matches as (0-based offset, matched text)."""
    hits = []
    for m in re.finditer(f"(?=({motif_re.pattern}))", sequence):
        if m.group(1):
            hits.append((m.start(), m.group(1)))
    return hits


def read_proteins(fasta_path):
    return {rec.id: str(rec.seq).upper().rstrip('*') for rec in SeqIO.parse(fasta_path, "fasta")}


def read_domain_table(path, domain_key="signature"):
    """Return a DataFrame with protein_id, domain, start, end."""
    with open(path, 'r') as f:
        first = next((line for line in f if line.strip()), "")
    if not first:
        raise ValueError(f"{path} is empty")

    if first.split('\t')[0].strip().lower() == "protein_id":
        df = pd.read_csv(path, sep='\t', dtype={"protein_id": str, "domain": str})
        missing = {"protein_id", "domain", "start", "end"} - set(df.columns)
        if missing:
            raise ValueError(f"{path}: missing columns {', '.join(sorted(missing))}")
        df = df[["protein_id", "domain", "start", "end"]]
    else:
        # InterProScan TSV: 1 protein, 5 signature, 7 start, 8 stop, 12 InterPro entry
        raw = pd.read_csv(path, sep='\t', header=None, dtype=str, comment='#')
        if raw.shape[1] < 8:
            raise ValueError(f"{path}: neither a protein_id/domain/start/end table nor InterProScan TSV")
        domain_col = 11 if domain_key == "interpro" and raw.shape[1] > 11 else 4
        df = pd.DataFrame({"protein_id": raw[0], "domain": raw[domain_col],
                           "start": raw[6], "end": raw[7]})
        df = df[df["domain"].notna() & (df["domain"] != '-')]

    df = df.copy()
    df["start"] = pd.to_numeric(df["start"], errors="raise").astype(int)
    df["end"] = pd.to_numeric(df["end"], errors="raise").astype(int)
    return df.drop_duplicates().reset_index(drop=True)


def scan_domains(proteins, domains, motif_re):
    """
    Scan every domain instance for the motif.

    Instances with unknown proteins or coordinates outside the protein are
    logged and skipped.
    """
    rows = []
    skipped = 0
    for rec in domains.itertuples(index=False):
        seq = proteins.get(rec.protein_id)
        if seq is None:
            logging.warning(f"Protein {rec.protein_id} not in FASTA; skipping {rec.domain}")
            skipped += 1
            continue
        if rec.start < 1 or rec.end > len(seq) or rec.start > rec.end:
            logging.warning(f"{rec.domain} at {rec.start}-{rec.end} lies outside "
                            f"{rec.protein_id} (length {len(seq)}); skipping")
            skipped += 1
            continue
        domain_seq = seq[rec.start - 1:rec.end]
        hits = find_motif(domain_seq, motif_re)
        rows.append([rec.protein_id, rec.domain, rec.start, rec.end, len(domain_seq), len(hits),
                     ",".join(str(rec.start + offset) for offset, _ in hits),
                     ",".join(site for _, site in hits)])
    if skipped:
        logging.info(f"Skipped {skipped} domain instances")
    return pd.DataFrame(rows, columns=INSTANCE_COLUMNS)


def summarize_domains(instances):
    if instances.empty:
        return pd.DataFrame(columns=["domain", "instances", "proteins", "mean_length", "with_motif",
                                     "fraction_with_motif", "mean_motif_count"])
    grouped = instances.groupby("domain")
    summary = pd.DataFrame({
        "instances": grouped.size(),
        "proteins": grouped["protein_id"].nunique(),
        "mean_length": grouped["length"].mean(),
        "with_motif": grouped["motif_count"].apply(lambda c: int((c > 0).sum())),
        "mean_motif_count": grouped["motif_count"].mean(),
    })
    summary["fraction_with_motif"] = summary["with_motif"] / summary["instances"]
    summary = summary.reset_index()
    summary = summary[["domain", "instances", "proteins", "mean_length", "with_motif",
                       "fraction_with_motif", "mean_motif_count"]]
    return summary.sort_values(["fraction_with_motif", "instances"], ascending=False).reset_index(drop=True)


def plot_motif_fraction(summary, motif, prefix, top_n=30):
    data = summary.head(top_n)
    fig, ax = plt.subplots(figsize=(max(4, 0.35 * len(data) + 1.5), 3.5), dpi=300)
    ax.bar(np.arange(len(data)), data["fraction_with_motif"], color="#4C72B0", edgecolor="white")
    ax.set_xticks(np.arange(len(data)))
    ax.set_xticklabels(data["domain"], rotation=60, ha="right", fontsize=6)
    ax.set_ylim(0, 1)
    ax.set_ylabel("Fraction of instances with motif", fontsize=7)
    ax.set_title(f"Motif {motif} across domains", fontsize=8)
    ax.spines['top'].set_visible(False)
    ax.spines['right'].set_visible(False)

    pdf_path = f"{prefix}_motif_fraction.pdf"
    png_path = f"{prefix}_motif_fraction.png"
    fig.savefig(pdf_path, format='pdf', bbox_inches='tight')
    fig.savefig(png_path, format='png', bbox_inches='tight')
    plt.close(fig)
    return pdf_path, png_path


def plot_motif_logo(sites, motif, prefix):
    """Frequency logo of matched sites; returns None when the sites differ in length."""
    if not sites or len({len(s) for s in sites}) != 1:
        return None
    freq = logomaker.alignment_to_matrix(sites, to_type='probability')
    fig, ax = plt.subplots(figsize=(max(3, 0.4 * len(sites[0])), 2))
    logo = logomaker.Logo(freq, ax=ax, color_scheme='chemistry')
    logo.style_spines(visible=False)
    logo.style_spines(spines=['left', 'bottom'], visible=True)
    ax.set_xlabel('Position')
    ax.set_ylabel('Frequency')
    ax.set_title(f"{motif} sites (n={len(sites)})", fontsize=10)
    plt.tight_layout()

    pdf_path = f"{prefix}_motif_logo.pdf"
    png_path = f"{prefix}_motif_logo.png"
    plt.savefig(png_path, dpi=300)
    plt.savefig(pdf_path, dpi=300)
    plt.close(fig)
    return pdf_path, png_path


def main():
    parser = argparse.ArgumentParser(description="Motif statistics within protein domains.")
    parser.add_argument("--protein_fasta", required=True, help="Protein FASTA file.")
    parser.add_argument("--domain_table", required=True,
                        help="InterProScan TSV or TSV with protein_id, domain, start, end.")
    parser.add_argument("--motif", required=True, help="Regular expression or PROSITE pattern.")
    parser.add_argument("--motif_syntax", choices=["auto", "regex", "prosite"], default="auto",
                        help="How to read --motif (default: auto).")
    parser.add_argument("--domain_key", choices=["signature", "interpro"], default="signature",
                        help="Domain name column for InterProScan input (default: signature).")
    parser.add_argument("--domains", nargs='+', default=None, help="Only report these domains.")
    parser.add_argument("--output_prefix", required=True, help="Prefix for all output files.")
    args = parser.parse_args()

    out_dir = os.path.dirname(args.output_prefix)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    setup_logging(f"{args.output_prefix}_domain_motif_stats.log")

    try:
        motif_re = compile_motif(args.motif, args.motif_syntax)
        proteins = read_proteins(args.protein_fasta)
        domains = read_domain_table(args.domain_table, args.domain_key)
    except (ValueError, re.error) as e:
        logging.error(f"{e}")
        sys.exit(1)
    logging.info(f"Motif {args.motif} -> /{motif_re.pattern}/; {len(proteins)} proteins, "
                 f"{len(domains)} domain instances")

    if args.domains:
        domains = domains[domains["domain"].isin(set(args.domains))]
    instances = scan_domains(proteins, domains, motif_re)
    if instances.empty:
        logging.error("No domain instances left to analyse.")
        sys.exit(1)
    summary = summarize_domains(instances)

    instances_path = f"{args.output_prefix}_domain_instances.tsv"
    summary_path = f"{args.output_prefix}_domain_summary.tsv"
    instances.to_csv(instances_path, sep='\t', index=False)
    summary.to_csv(summary_path, sep='\t', index=False, float_format='%.4f')
    logging.info(f"Domain instances saved to {instances_path}")
    logging.info(f"Domain summary saved to {summary_path}")

    pdf_path, png_path = plot_motif_fraction(summary, args.motif, args.output_prefix)
    logging.info(f"Bar chart saved as: {pdf_path}, {png_path}")

    sites = [s for cell in instances["motif_sites"] if cell for s in cell.split(",")]
    logo_paths = plot_motif_logo(sites, args.motif, args.output_prefix)
    if logo_paths:
        logging.info(f"Motif logo saved as: {logo_paths[0]}, {logo_paths[1]}")
    else:
        logging.info("Motif sites differ in length or are absent; no logo drawn.")


if __name__ == "__main__":
    main()
