#!/usr/bin/env python3
"""
Add attribute tags to GFF3 features from a tab-separated table.

The first column of the table holds feature IDs (matched against the ID
attribute, and against Parent with --match_parent); every other column name is
used as a tag name and its cell as the tag value. Empty cells are ignored.

Usage:
    python Step_04_gff_add_tags.py --input_gff genes.gff3 --tag_table annot.tsv \\
        --output_gff genes.tagged.gff3 --feature_types gene mRNA
"""

import sys
import argparse
from collections import OrderedDict
from urllib.parse import quote, unquote

import pandas as pd

# Characters with reserved meaning in GFF3 column 9
GFF3_RESERVED = ";=&,\t\n\r%"


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Inject tags from a TSV table into column 9 of a GFF3 file."
    )
    parser.add_argument("--input_gff", required=True, help="Input GFF3 file.")
    parser.add_argument("--tag_table", required=True,
                        help="TSV with a header; column 1 = feature ID, other columns = tags.")
    parser.add_argument("--output_gff", required=True, help="Output GFF3 file.")
    parser.add_argument("--feature_types", nargs='+', default=None,
                        help="Only tag features of these types (column 3), e.g. gene mRNA.")
    parser.add_argument("--match_parent", action="store_true",
                        help="Also tag features whose Parent matches a table ID.")
    parser.add_argument("--overwrite", action="store_true",
                        help="Replace existing tag values instead of appending.")
    return parser.parse_args(argv)


def escape_value(value):
    """Percent-encode GFF3 reserved characters in an attribute value."""
    return quote(str(value), safe="".join(chr(c) for c in range(32, 127) if chr(c) not in GFF3_RESERVED))


def read_tag_table(path):
    """
    Read the tag table into {feature_id: OrderedDict(tag -> value)}.
    Empty or NA cells are dropped.
    """
    df = pd.read_csv(path, sep='\t', dtype=str, keep_default_na=False)
    if df.shape[1] < 2:
        raise ValueError(f"{path}: need an ID column and at least one tag column")
    id_col = df.columns[0]
    tags = {}
    for _, row in df.iterrows():
        feature_id = row[id_col].strip()
        if not feature_id:
            continue
        entry = tags.setdefault(feature_id, OrderedDict())
        for col in df.columns[1:]:
            value = row[col].strip()
            if value and value.upper() not in ("NA", "NAN"):
                entry[col] = value
    return tags


def parse_attributes(column9):
    """Column 9 -> OrderedDict(tag -> list of decoded values)."""
    attrs = OrderedDict()
    if column9.strip() in ("", "."):
        return attrs
    for field in column9.strip().strip(';').split(';'):
        field = field.strip()
        if not field:
            continue
        if '=' not in field:
            raise ValueError(f"Malformed attribute '{field}'")
        key, value = field.split('=', 1)
        attrs[key] = [unquote(v) for v in value.split(',')]
    return attrs


def format_attributes(attrs):
    return ";".join(f"{key}={','.join(escape_value(v) for v in values)}" for key, values in attrs.items())


def apply_tags(attrs, new_tags, overwrite=False):
    """Merge new_tags into attrs in place; returns True if anything changed."""
    changed = False
    for tag, value in new_tags.items():
        if overwrite or tag not in attrs:
            if attrs.get(tag) != [value]:
                attrs[tag] = [value]
                changed = True
        elif value not in attrs[tag]:
            attrs[tag].append(value)
            changed = True
    return changed


def tag_gff(in_handle, out_handle, tags, feature_types=None, match_parent=False, overwrite=False):
    """
    Stream a GFF3 file, adding tags to matching features.

    Returns:
        tuple: (number of features tagged, set of table IDs that matched)
    """
    wanted_types = set(feature_types) if feature_types else None
    tagged = 0
    matched_ids = set()
    in_fasta = False

    for line_no, line in enumerate(in_handle, start=1):
        # Everything after ##FASTA is sequence data
        if in_fasta or line.startswith('#') or not line.strip():
            if line.startswith('##FASTA'):
                in_fasta = True
            out_handle.write(line)
            continue

        fields = line.rstrip('\n').split('\t')
        if len(fields) != 9:
            raise ValueError(f"Line {line_no}: expected 9 tab-separated columns, found {len(fields)}")
        if wanted_types and fields[2] not in wanted_types:
            out_handle.write(line)
            continue

        try:
            attrs = parse_attributes(fields[8])
        except ValueError as e:
            raise ValueError(f"Line {line_no}: {e}") from e

        keys = list(attrs.get('ID', []))
        if match_parent:
            keys += attrs.get('Parent', [])
        hits = [k for k in keys if k in tags]
        changed = False
        for key in hits:
            matched_ids.add(key)
            changed |= apply_tags(attrs, tags[key], overwrite)

        if changed:
            fields[8] = format_attributes(attrs)
            tagged += 1
            out_handle.write("\t".join(fields) + "\n")
        else:
            out_handle.write(line)

    return tagged, matched_ids


def main(argv=None):
    args = parse_args(argv)
    try:
        tags = read_tag_table(args.tag_table)
        with open(args.input_gff, 'r') as fin, open(args.output_gff, 'w') as fout:
            tagged, matched = tag_gff(fin, fout, tags, args.feature_types,
                                      args.match_parent, args.overwrite)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    unmatched = len(set(tags) - matched)
    print(f"Tagged {tagged} features using {len(tags)} table IDs")
    if unmatched:
        print(f"Warning: {unmatched} table IDs were not found in {args.input_gff}", file=sys.stderr)
    print(f"Tagged GFF written to {args.output_gff}")


if __name__ == "__main__":
    main()
