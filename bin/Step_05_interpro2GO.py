#!/usr/bin/env python3
"""
Extract GO annotations from InterProScan results.

Accepts the InterProScan 5 XML output (*.xml) or the TSV output (any other
extension) and writes:
  - a long table: protein_id, GO_id, GO_category, GO_name, source
  - optionally a gene2GO table: protein_id <TAB> GO:0000001,GO:0000002,...

The TSV output does not carry GO names or categories; those columns are left
empty for TSV input.

Usage: python Step_05_interpro2GO.py --input proteins.xml --output proteins_GO.tsv \
           [--output_gene2go proteins_gene2go.tsv]
"""

import re
import sys
import argparse
import xml.etree.ElementTree as ET

import pandas as pd

GO_COLUMNS = ["protein_id", "GO_id", "GO_category", "GO_name", "source"]
GO_ID_PATTERN = re.compile(r'^(GO:\d{7})(?:\((.+)\))?$')


def local_name(tag):
    """Strip the XML namespace from a tag."""
    return tag.rsplit('}', 1)[-1]


def children(elem, name):
    return [c for c in elem if local_name(c.tag) == name]


def iter_go_xrefs(elem):
    for node in elem.iter():
        if local_name(node.tag) == 'go-xref':
            yield node


def parse_protein_element(protein):
    """
    GO rows for one <protein> element.

    GO terms under a signature's <entry> are attributed to the InterPro entry;
    terms attached directly to the signature are attributed to the signature.
    """
    ids = [x.get('id') for x in children(protein, 'xref') if x.get('id')]
    terms = []
    for matches in children(protein, 'matches'):
        for match in matches:
            for signature in children(match, 'signature'):
                for entry in children(signature, 'entry'):
                    for go in iter_go_xrefs(entry):
                        terms.append((go.get('id'), go.get('category', ''), go.get('name', ''),
                                      entry.get('ac', '')))
                for go in children(signature, 'go-xref'):
                    terms.append((go.get('id'), go.get('category', ''), go.get('name', ''),
                                  signature.get('ac', '')))

    rows = []
    for protein_id in ids:
        for go_id, category, name, source in terms:
            if go_id:
                rows.append([protein_id, go_id, category, name, source])
    return rows


def parse_interpro_xml(path):
    """Stream an InterProScan 5 XML file protein by protein."""
    rows = []
    for _, elem in ET.iterparse(path, events=('end',)):
        if local_name(elem.tag) == 'protein':
            rows.extend(parse_protein_element(elem))
            elem.clear()
    return rows


def split_go_field(field):
    """'GO:0005515(InterPro)|GO:0005737' -> [('GO:0005515', 'InterPro'), ('GO:0005737', '')]"""
    if not field or field.strip() in ('-', ''):
        return []
    terms = []
    for token in field.strip().split('|'):
        match = GO_ID_PATTERN.match(token.strip())
        if not match:
            raise ValueError(f"Unrecognised GO term '{token}'")
        terms.append((match.group(1), match.group(2) or ''))
    return terms


def parse_interpro_tsv(path):
    rows = []
    with open(path, 'r') as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip() or line.startswith('#'):
                continue
            parts = line.rstrip('\n').split('\t')
            if len(parts) < 14:
                continue
            protein_id, signature_ac, ipr_ac = parts[0], parts[4], parts[11]
            try:
                terms = split_go_field(parts[13])
            except ValueError as e:
                raise ValueError(f"{path} line {line_no}: {e}") from e
            for go_id, db in terms:
                source = db or (ipr_ac if ipr_ac not in ('', '-') else signature_ac)
                rows.append([protein_id, go_id, '', '', source])
    return rows


def collapse_go_table(rows):
    """One row per (protein, GO term); sources joined by ','."""
    df = pd.DataFrame(rows, columns=GO_COLUMNS)
    if df.empty:
        return df

    def join_unique(values):
        return ",".join(sorted({v for v in values if v}))

    def first_non_empty(values):
        non_empty = [v for v in values if v]
        return non_empty[0] if non_empty else ''

    collapsed = (df.groupby(["protein_id", "GO_id"], sort=True)
                   .agg(GO_category=("GO_category", first_non_empty),
                        GO_name=("GO_name", first_non_empty),
                        source=("source", join_unique))
                   .reset_index())
    return collapsed[GO_COLUMNS]


def to_gene2go(go_table):
    if go_table.empty:
        return pd.DataFrame(columns=["protein_id", "GO_ids"])
    return (go_table.groupby("protein_id")["GO_id"]
                    .agg(lambda ids: ",".join(sorted(set(ids))))
                    .reset_index()
                    .rename(columns={"GO_id": "GO_ids"}))


def main():
    parser = argparse.ArgumentParser(description="Extract GO terms from InterProScan XML or TSV output.")
    parser.add_argument("--input", required=True, help="InterProScan output (.xml or .tsv).")
    parser.add_argument("--output", required=True, help="Output long-format GO table (TSV).")
    parser.add_argument("--output_gene2go", default=None,
                        help="Optional output with one row per protein and comma-joined GO IDs.")
    args = parser.parse_args()

    try:
        if args.input.lower().endswith('.xml'):
            rows = parse_interpro_xml(args.input)
        else:
            rows = parse_interpro_tsv(args.input)
    except (ValueError, ET.ParseError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    go_table = collapse_go_table(rows)
    go_table.to_csv(args.output, sep='\t', index=False)
    print(f"{len(go_table)} GO annotations for {go_table['protein_id'].nunique()} proteins "
          f"written to {args.output}")

    if args.output_gene2go:
        to_gene2go(go_table).to_csv(args.output_gene2go, sep='\t', index=False, header=False)
        print(f"gene2GO table written to {args.output_gene2go}")


if __name__ == "__main__":
    main()
