import io

import pytest

import Step_04_gff_add_tags as gff_tags


GFF = (
    "##gff-version 3\n"
    "Chr1\tsrc\tgene\t1\t900\t.\t+\t.\tID=gene1;Name=AT1G01010\n"
    "Chr1\tsrc\tmRNA\t1\t900\t.\t+\t.\tID=gene1.1;Parent=gene1\n"
    "Chr1\tsrc\texon\t1\t300\t.\t+\t.\tParent=gene1.1\n"
    "Chr1\tsrc\tgene\t1000\t2000\t.\t-\t.\tID=gene2\n"
    "\n"
    "##FASTA\n"
    ">Chr1\n"
    "ACGT\n"
)


def run_tagging(tags, **kwargs):
    out = io.StringIO()
    tagged, matched = gff_tags.tag_gff(io.StringIO(GFF), out, tags, **kwargs)
    return tagged, matched, out.getvalue().splitlines()


class TestAttributes:

    def test_parse_and_format_round_trip_with_reserved_chars(self):
        attrs = gff_tags.parse_attributes("ID=g1;Note=a%3Bb,c;")
        assert attrs == {"ID": ["g1"], "Note": ["a;b", "c"]}
        assert gff_tags.format_attributes(attrs) == "ID=g1;Note=a%3Bb,c"

    def test_escape_value(self):
        assert gff_tags.escape_value("kinase, putative") == "kinase%2C putative"
        assert gff_tags.escape_value("50%=half") == "50%25%3Dhalf"

    def test_empty_column(self):
        assert gff_tags.parse_attributes(".") == {}

    def test_malformed_attribute(self):
        with pytest.raises(ValueError):
            gff_tags.parse_attributes("ID=g1;broken")

    def test_apply_tags_appends_unless_overwrite(self):
        attrs = {"Note": ["old"]}
        assert gff_tags.apply_tags(attrs, {"Note": "new"})
        assert attrs["Note"] == ["old", "new"]
        assert not gff_tags.apply_tags(attrs, {"Note": "new"})
        assert gff_tags.apply_tags(attrs, {"Note": "only"}, overwrite=True)
        assert attrs["Note"] == ["only"]


class TestTagGff:

    def test_tags_by_id(self):
        tagged, matched, lines = run_tagging({"gene2": {"Note": "kinase"}})
        assert tagged == 1
        assert matched == {"gene2"}
        assert lines[4].endswith("ID=gene2;Note=kinase")
        # untouched lines are copied verbatim
        assert lines[1] == GFF.splitlines()[1]

    def test_match_parent(self):
        tagged, _, lines = run_tagging({"gene1": {"GO": "GO:0003677"}}, match_parent=True)
        assert tagged == 2
        assert "GO=GO:0003677" in lines[1]
        assert "GO=GO:0003677" in lines[2]
        assert "GO=" not in lines[3]

    def test_feature_type_filter(self):
        tagged, matched, lines = run_tagging({"gene1": {"Note": "x"}, "gene1.1": {"Note": "y"}},
                                             feature_types=["mRNA"])
        assert tagged == 1
        assert matched == {"gene1.1"}
        assert "Note" not in lines[1]

    def test_fasta_section_passed_through(self):
        _, _, lines = run_tagging({"Chr1": {"Note": "x"}})
        assert lines[-2:] == [">Chr1", "ACGT"]

    def test_wrong_column_count_reports_line(self):
        bad = io.StringIO("##gff-version 3\nChr1\tsrc\tgene\t1\t9\n")
        with pytest.raises(ValueError, match="Line 2"):
            gff_tags.tag_gff(bad, io.StringIO(), {})


class TestMain:

    def test_table_to_tagged_file(self, tmp_path, capsys):
        gff_path = tmp_path / "in.gff3"
        gff_path.write_text(GFF)
        table = tmp_path / "tags.tsv"
        table.write_text("gene_id\tNote\tsymbol\ngene1\tzinc finger\tNA\nmissing\tx\t\n")
        out = tmp_path / "out.gff3"

        gff_tags.main(["--input_gff", str(gff_path), "--tag_table", str(table),
                       "--output_gff", str(out)])

        lines = out.read_text().splitlines()
        assert lines[1].endswith("ID=gene1;Name=AT1G01010;Note=zinc finger")
        captured = capsys.readouterr()
        assert "Tagged 1 features using 2 table IDs" in captured.out
        assert "1 table IDs were not found" in captured.err

    def test_single_column_table_exits(self, tmp_path):
        gff_path = tmp_path / "in.gff3"
        gff_path.write_text(GFF)
        table = tmp_path / "tags.tsv"
        table.write_text("gene_id\ngene1\n")
        with pytest.raises(SystemExit):
            gff_tags.main(["--input_gff", str(gff_path), "--tag_table", str(table),
                           "--output_gff", str(tmp_path / "o.gff3")])
