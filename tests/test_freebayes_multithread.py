"""
Tests for the region-parallel freebayes runner.

A small Python script stands in for freebayes and the BAM header is served by
a fake pysam.AlignmentFile, so no external tools are needed.
"""
import os
import stat
import sys
import textwrap

import pytest

import batch_dispatcher
import Step_01_freebayes_multithread as fbm
from batch_dispatcher import PartitionError


FAKE_FREEBAYES = textwrap.dedent("""\
    #!{python}
    import sys
    argv = sys.argv[1:]
    region = argv[argv.index("-r") + 1]
    out = argv[argv.index("-v") + 1]
    if region.startswith("{fail_on}"):
        sys.stderr.write("cannot call " + region)
        sys.exit(2)
    with open(out, "w") as f:
        f.write("##fileformat=VCFv4.2\\n")
        f.write("#CHROM\\tPOS\\tID\\n")
        f.write(region.split(":")[0] + "\\t" + region + "\\t.\\n")
""")


class FakeAlignmentFile:
    references = ("Chr1", "Chr2", "ChrM")
    lengths = (25, 10, 5)

    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def fake_bam(monkeypatch):
    monkeypatch.setattr(fbm.pysam, "AlignmentFile", FakeAlignmentFile)


def make_fake_freebayes(tmp_path, fail_on="NONE"):
    script = tmp_path / "fake_freebayes"
    script.write_text(FAKE_FREEBAYES.format(python=sys.executable, fail_on=fail_on))
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


def make_args(tmp_path, *extra):
    bam = tmp_path / "sample.bam"
    ref = tmp_path / "ref.fa"
    bam.write_bytes(b"")
    ref.write_text(">Chr1\nACGT\n")
    return fbm.parse_arguments([
        "--input_bam", str(bam),
        "--reference_fasta", str(ref),
        "--output_dir", str(tmp_path / "out"),
        "--bin_size", "10",
        "--threads", "2",
        *extra,
    ])


class TestArguments:

    def test_defaults(self, tmp_path):
        args = make_args(tmp_path)
        assert args.freebayes == "freebayes"
        assert args.keep_shards is False
        assert args.skip_missing is False

    @pytest.mark.parametrize("flag", ["--threads", "--bin_size"])
    def test_non_positive_values_rejected(self, tmp_path, flag):
        with pytest.raises(SystemExit):
            make_args(tmp_path, flag, "0")


class TestReferenceLengths:

    def test_header_order(self, fake_bam):
        assert fbm.read_reference_lengths("x.bam") == [("Chr1", 25), ("Chr2", 10), ("ChrM", 5)]

    def test_chromosome_subset_keeps_header_order(self, fake_bam):
        assert fbm.read_reference_lengths("x.bam", ["ChrM", "Chr1"]) == [("Chr1", 25), ("ChrM", 5)]

    def test_unknown_chromosome_raises(self, fake_bam):
        with pytest.raises(PartitionError, match="Chr9"):
            fbm.read_reference_lengths("x.bam", ["Chr9"])


class TestTemplate:

    def test_command_layout(self, tmp_path):
        args = make_args(tmp_path, "--freebayes_args=--ploidy 1 --min-alternate-count 3")
        unit = fbm.build_template(args).render(1, "Chr1:0-10")
        out = os.path.join(args.output_dir, "sample_Chr1_0_10.vcf")
        assert unit.command == (
            "freebayes", "-f", args.reference_fasta, "-r", "Chr1:0-10",
            "--ploidy", "1", "--min-alternate-count", "3",
            "-v", out, args.input_bam,
        )
        assert unit.output_path == out

    def test_index_detection(self, tmp_path):
        bam = tmp_path / "a.bam"
        bam.write_bytes(b"")
        assert not fbm.bam_index_exists(str(bam))
        (tmp_path / "a.bai").write_bytes(b"")
        assert fbm.bam_index_exists(str(bam))


class TestRun:

    def test_merged_vcf_has_one_header_and_all_regions(self, tmp_path, fake_bam):
        args = make_args(tmp_path, "--freebayes", make_fake_freebayes(tmp_path))
        os.makedirs(args.output_dir)
        logger = batch_dispatcher.setup_logging()

        assert fbm.run(args, logger) == 0

        merged = os.path.join(args.output_dir, "sample.vcf")
        lines = open(merged).read().splitlines()
        assert lines[0] == "##fileformat=VCFv4.2"
        assert sum(1 for line in lines if line.startswith("#CHROM")) == 1
        regions = [line.split("\t")[1] for line in lines if not line.startswith("#")]
        assert regions == ["Chr1:0-10", "Chr1:11-20", "Chr1:21-25", "Chr2:0-10", "ChrM:0-5"]
        # shards removed by default
        assert sorted(os.listdir(args.output_dir)) == ["sample.vcf"]

    def test_keep_shards(self, tmp_path, fake_bam):
        args = make_args(tmp_path, "--freebayes", make_fake_freebayes(tmp_path),
                         "--keep_shards", "--chromosomes", "Chr2")
        os.makedirs(args.output_dir)
        assert fbm.run(args, batch_dispatcher.setup_logging()) == 0
        assert sorted(os.listdir(args.output_dir)) == ["sample.vcf", "sample_Chr2_0_10.vcf"]

    def test_failed_region_aborts_merge(self, tmp_path, fake_bam):
        args = make_args(tmp_path, "--freebayes", make_fake_freebayes(tmp_path, fail_on="Chr2"))
        os.makedirs(args.output_dir)
        with pytest.raises(FileNotFoundError):
            fbm.run(args, batch_dispatcher.setup_logging())
        assert not os.path.exists(os.path.join(args.output_dir, "sample.vcf"))

    def test_failed_region_with_skip_missing(self, tmp_path, fake_bam):
        args = make_args(tmp_path, "--freebayes", make_fake_freebayes(tmp_path, fail_on="Chr2"),
                         "--skip_missing")
        os.makedirs(args.output_dir)

        assert fbm.run(args, batch_dispatcher.setup_logging()) == 1

        lines = open(os.path.join(args.output_dir, "sample.vcf")).read().splitlines()
        regions = [line.split("\t")[1] for line in lines if not line.startswith("#")]
        assert regions == ["Chr1:0-10", "Chr1:11-20", "Chr1:21-25", "ChrM:0-5"]

    def test_main_reports_missing_bam(self, tmp_path):
        code = fbm.main([
            "--input_bam", str(tmp_path / "absent.bam"),
            "--reference_fasta", str(tmp_path / "ref.fa"),
            "--output_dir", str(tmp_path / "out"),
        ])
        assert code == 1
        assert os.path.exists(tmp_path / "out" / "absent_freebayes_multithread.log")


class TestBaseName:

    def test_only_trailing_suffix_removed(self):
        assert fbm.bam_basename("/data/x.bam.sorted.bam") == "x.bam.sorted"
        assert fbm.bam_basename("sample.cram") == "sample.cram"

    def test_log_and_vcf_share_base_name(self, tmp_path):
        bam = tmp_path / "x.bam.sorted.bam"
        bam.write_bytes(b"")
        args = fbm.parse_arguments(["--input_bam", str(bam),
                                    "--reference_fasta", str(tmp_path / "absent.fa"),
                                    "--output_dir", str(tmp_path / "out")])
        assert fbm.main(["--input_bam", str(bam), "--reference_fasta", str(tmp_path / "absent.fa"),
                         "--output_dir", str(tmp_path / "out")]) == 1
        assert (tmp_path / "out" / "x.bam.sorted_freebayes_multithread.log").exists()
        assert fbm.build_template(args).merged_path() == str(tmp_path / "out" / "x.bam.sorted.vcf")

    def test_braced_reference_path_is_passed_through(self, tmp_path):
        args = make_args(tmp_path)
        args.reference_fasta = str(tmp_path / "ref{v2}.fa")
        unit = fbm.build_template(args).render(1, "Chr1:0-10")
        assert unit.command[1:3] == ("-f", str(tmp_path / "ref{v2}.fa"))
