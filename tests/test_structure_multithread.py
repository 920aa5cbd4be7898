"""
Tests for the parallel Structure runner: unit grid construction, result file
parsing and the per-K summary with Evanno's delta K.
"""
import math
import os
import stat
import sys
import textwrap

import numpy as np
import pandas as pd
import pytest

import batch_dispatcher
import Step_03_structure_multithread as smt


STRUCTURE_OUTPUT = """\
----------------------------------------------------
STRUCTURE by Pritchard, Stephens and Donnelly (2000)
----------------------------------------------------
Run parameters:
   60 individuals
   12 loci
   2 populations assumed

Estimated Ln Prob of Data   = -1234.5
Mean value of ln likelihood = -1200.1
Variance of ln likelihood   = 68.8
Mean value of alpha         = 0.0512
"""

FAKE_STRUCTURE = textwrap.dedent("""\
    #!{python}
    import sys
    argv = sys.argv[1:]
    k = int(argv[argv.index("-K") + 1])
    out = argv[argv.index("-o") + 1]
    seed = int(argv[argv.index("-D") + 1])
    with open(out + "_f", "w") as f:
        f.write("Estimated Ln Prob of Data   = %.1f\\n" % (-100.0 * k - (seed % 2)))
        f.write("Mean value of ln likelihood = -1.0\\n")
        f.write("Variance of ln likelihood   = 2.0\\n")
""")


def make_args(tmp_path, *extra):
    for name in ("pop.str", "mainparams", "extraparams"):
        (tmp_path / name).write_text("x\n")
    return smt.parse_arguments([
        "--input", str(tmp_path / "pop.str"),
        "--mainparams", str(tmp_path / "mainparams"),
        "--extraparams", str(tmp_path / "extraparams"),
        "--output_dir", str(tmp_path / "out"),
        *extra,
    ])


class TestBuildUnits:

    def test_grid_order_and_count(self, tmp_path):
        (tmp_path / "other.str").write_text("x\n")
        args = make_args(tmp_path, "--k_values", "3", "1", "2", "--replicates", "2")
        args.input.append(str(tmp_path / "other.str"))
        units = smt.build_units(args)

        assert len(units) == 2 * 3 * 2
        assert [u.slot for u in units[:6]] == ["K1_rep1", "K1_rep2", "K2_rep1", "K2_rep2", "K3_rep1", "K3_rep2"]
        assert units[0].output_path == os.path.join(args.output_dir, "pop_K1_rep1.out_f")
        assert units[-1].output_path == os.path.join(args.output_dir, "other_K3_rep2.out_f")

    def test_seed_increases_with_ordinal(self, tmp_path):
        args = make_args(tmp_path, "--k_values", "2", "--replicates", "3", "--seed", "100")
        units = smt.build_units(args)
        seeds = [u.command[u.command.index("-D") + 1] for u in units]
        assert seeds == ["101", "102", "103"]

    def test_command_points_output_without_suffix(self, tmp_path):
        args = make_args(tmp_path, "--k_values", "2")
        unit = smt.build_units(args)[0]
        assert unit.command[0] == "structure"
        assert unit.command[unit.command.index("-K") + 1] == "2"
        assert unit.command[unit.command.index("-o") + 1] == os.path.join(args.output_dir, "pop_K2_rep1.out")

    def test_zero_k_rejected(self, tmp_path):
        with pytest.raises(SystemExit):
            make_args(tmp_path, "--k_values", "0")


class TestParseResult:

    def test_values_read(self, tmp_path):
        path = tmp_path / "run.out_f"
        path.write_text(STRUCTURE_OUTPUT)
        values = smt.parse_structure_result(str(path))
        assert values == {'LnPD': -1234.5, 'mean_LnL': -1200.1, 'var_LnL': 68.8}

    def test_absent_values_are_nan(self, tmp_path):
        path = tmp_path / "run.out_f"
        path.write_text("Estimated Ln Prob of Data   = -10.0\n")
        values = smt.parse_structure_result(str(path))
        assert values['LnPD'] == -10.0
        assert math.isnan(values['mean_LnL'])
        assert math.isnan(values['var_LnL'])


class TestSummarizeK:

    def test_delta_k_inner_values_only(self):
        runs = pd.DataFrame({
            'K': [1, 1, 2, 2, 3, 3],
            'LnPD': [-100.0, -102.0, -80.0, -82.0, -78.0, -80.0],
        })
        summary = smt.summarize_k(runs)

        assert list(summary['K']) == [1, 2, 3]
        assert list(summary['runs']) == [2, 2, 2]
        assert list(summary['mean_LnPD']) == [-101.0, -81.0, -79.0]
        assert np.isnan(summary.loc[0, 'delta_K'])
        assert np.isnan(summary.loc[2, 'delta_K'])
        assert summary.loc[1, 'delta_K'] == pytest.approx(18.0 / math.sqrt(2.0))

    def test_single_replicate_gives_nan_delta(self):
        runs = pd.DataFrame({'K': [1, 2, 3], 'LnPD': [-100.0, -80.0, -78.0]})
        summary = smt.summarize_k(runs)
        assert summary['delta_K'].isna().all()

    def test_gap_in_k_gives_nan(self):
        runs = pd.DataFrame({'K': [1, 1, 2, 2, 4, 4], 'LnPD': [-1.0, -2.0, -3.0, -4.0, -5.0, -6.0]})
        summary = smt.summarize_k(runs).set_index('K')
        assert summary['delta_K'].isna().all()


class TestRunAll:

    def test_end_to_end_with_fake_structure(self, tmp_path):
        script = tmp_path / "fake_structure"
        script.write_text(FAKE_STRUCTURE.format(python=sys.executable))
        script.chmod(script.stat().st_mode | stat.S_IEXEC)

        args_list = [
            "--input", str(tmp_path / "pop.str"),
            "--mainparams", str(tmp_path / "mainparams"),
            "--extraparams", str(tmp_path / "extraparams"),
            "--output_dir", str(tmp_path / "out"),
            "--k_values", "1", "2", "3",
            "--replicates", "2",
            "--threads", "4",
            "--structure", str(script),
        ]
        make_args(tmp_path, "--k_values", "1")
        assert smt.main(args_list) == 0

        runs = pd.read_csv(tmp_path / "out" / "structure_runs_summary.tsv", sep='\t')
        assert len(runs) == 6
        assert list(runs['K']) == [1, 1, 2, 2, 3, 3]

        k_summary = pd.read_csv(tmp_path / "out" / "pop_K_summary.tsv", sep='\t')
        assert list(k_summary['runs']) == [2, 2, 2]
        assert k_summary.loc[1, 'delta_K'] == pytest.approx(0.0)

    def test_collect_skips_missing_outputs(self, tmp_path):
        args = make_args(tmp_path, "--k_values", "1", "2")
        units = smt.build_units(args)
        os.makedirs(args.output_dir)
        with open(units[1].output_path, 'w') as f:
            f.write(STRUCTURE_OUTPUT)

        runs = smt.collect_results(units, batch_dispatcher.setup_logging())
        assert len(runs) == 1
        assert runs.loc[0, 'K'] == 2
        assert runs.loc[0, 'input'] == 'pop'
