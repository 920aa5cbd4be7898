#!/usr/bin/env python3
"""
Convert a HapMap genotype table (TASSEL hmp.txt) into a FASTA alignment with
one sequence per sample and one column per SNP.

Genotype calls:
  - one-letter IUPAC (A, C, G, T, R, Y, ...) or two-letter diploid (AA, AG)
  - homozygous calls become the base, heterozygous calls the IUPAC ambiguity code
  - missing calls (N, NN, ?, ??) become --missing_char
  - indel calls (+, -, 0 and pairs such as +- or --) also become --missing_char
    and are counted separately

Usage: python Step_06_hapmap2fasta.py --input_hapmap genotypes.hmp.txt --output_fasta snps.fa
"""

import sys
import argparse
from collections import Counter

import pandas as pd
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord
from Bio.SeqIO.FastaIO import FastaWriter

HAPMAP_FIXED_COLUMNS = 11

IUPAC_CODES = {
    frozenset("A"): "A", frozenset("C"): "C", frozenset("G"): "G", frozenset("T"): "T",
    frozenset("AG"): "R", frozenset("CT"): "Y", frozenset("CG"): "S",
    frozenset("AT"): "W", frozenset("GT"): "K", frozenset("AC"): "M",
}
SINGLE_LETTER_CODES = set("ACGTRYSWKMBDHV")
MISSING_CALLS = {"N", "NN", "?", "??", ""}
INDEL_SYMBOLS = set("+-0")


def parse_args():
    parser = argparse.ArgumentParser(description="Convert a HapMap genotype file to a per-sample FASTA alignment.")
    parser.add_argument("--input_hapmap", required=True, help="HapMap (hmp.txt) file.")
    parser.add_argument("--output_fasta", required=True, help="Output FASTA file.")
    parser.add_argument("--chromosomes", nargs='+', default=None, help="Only use SNPs on these chromosomes.")
    parser.add_argument("--missing_char", default="N", help="Character for missing/indel calls (default: N).")
    parser.add_argument("--wrap", type=int, default=60,
                        help="FASTA line width; 0 writes each sequence on one line (default: 60).")
    args = parser.parse_args()
    if len(args.missing_char) != 1:
        parser.error("--missing_char must be a single character")
    return args


def call_to_base(call, missing_char="N"):
    """
    Translate one genotype call to a single alignment character.

    Returns:
        tuple: (character, kind) with kind in {'called', 'missing', 'indel'}
    """
    call = str(call).strip().upper()
    if call in MISSING_CALLS or (len(call) == 2 and "N" in call):
        return missing_char, "missing"
    if any(c in INDEL_SYMBOLS for c in call):
        return missing_char, "indel"
    if len(call) == 1:
        if call in SINGLE_LETTER_CODES:
            return call, "called"
        raise ValueError(f"Unrecognised genotype call '{call}'")
    if len(call) == 2:
        code = IUPAC_CODES.get(frozenset(call))
        if code is None:
            raise ValueError(f"Unrecognised genotype call '{call}'")
        return code, "called"
    raise ValueError(f"Unrecognised genotype call '{call}'")


def read_hapmap(path, chromosomes=None):
    """Read a HapMap table; returns (site table, genotype calls with one column per sample)."""
    df = pd.read_csv(path, sep='\t', dtype=str, keep_default_na=False)
    if df.shape[1] <= HAPMAP_FIXED_COLUMNS:
        raise ValueError(f"{path}: expected {HAPMAP_FIXED_COLUMNS} fixed columns followed by samples, "
                         f"found {df.shape[1]} columns")
    sites = df.iloc[:, :HAPMAP_FIXED_COLUMNS]
    calls = df.iloc[:, HAPMAP_FIXED_COLUMNS:]
    if chromosomes:
        keep = sites.iloc[:, 2].isin(set(chromosomes))
        sites, calls = sites[keep], calls[keep]
    return sites, calls


def hapmap_to_sequences(calls, missing_char="N"):
    """
    Build one sequence per sample.

    Returns:
        tuple: (dict sample -> sequence, Counter of call kinds)
    """
    table = {}
    for value in pd.unique(calls.values.ravel()):
        table[value] = call_to_base(value, missing_char)

    kinds = Counter()
    sequences = {}
    for sample in calls.columns:
        translated = [table[v] for v in calls[sample]]
        sequences[sample] = "".join(base for base, _ in translated)
        kinds.update(kind for _, kind in translated)
    return sequences, kinds


def write_fasta(sequences, path, wrap=60):
    records = [SeqRecord(Seq(seq), id=str(sample), description="") for sample, seq in sequences.items()]
    with open(path, 'w') as handle:
        FastaWriter(handle, wrap=wrap if wrap > 0 else None).write_file(records)
    return len(records)


def main():
    args = parse_args()
    try:
        sites, calls = read_hapmap(args.input_hapmap, args.chromosomes)
        sequences, kinds = hapmap_to_sequences(calls, args.missing_char)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if len(sites) == 0:
        print("Error: no SNPs left after chromosome filtering.", file=sys.stderr)
        sys.exit(1)

    n_records = write_fasta(sequences, args.output_fasta, args.wrap)
    print(f"{n_records} samples x {len(sites)} SNPs written to {args.output_fasta}")
    print(f"Calls: {kinds['called']} called, {kinds['missing']} missing, {kinds['indel']} indel")


if __name__ == "__main__":
    main()
