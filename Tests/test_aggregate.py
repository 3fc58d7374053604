import os, sys, tempfile, logging
import numpy as np
import pytest
ROOT = os.path.dirname(os.path.dirname(__file__))
sys.path.insert(0, ROOT)

import keystream_dist_cli as ksd
from keystream_dist_cli import (KeystreamDistribution, FormatError, UsageError, SelfTestFailure,
                                plan_trials, compute_distribution, merge_files, parse_trials, main)

TRIALS = int(os.getenv("KSD_TRIALS", "100"))
WORKERS = int(os.getenv("KSD_WORKERS", "3"))

def test_plan_trials():
    assert plan_trials(100, 1) == (100, 100)
    assert plan_trials(100, 4) == (25, 100)
    assert plan_trials(100, 3) == (34, 102)
    assert plan_trials(5, 8) == (1, 8)
    assert plan_trials(0, 4) == (0, 0)
    for t in range(0, 50):
        for w in range(1, 9):
            per, executed = plan_trials(t, w)
            assert executed >= t and executed - t < w and executed == per * w
    with pytest.raises(ValueError):
        plan_trials(10, 0)
    with pytest.raises(ValueError):
        plan_trials(-1, 2)

def test_single_worker_rows_sum_to_trials():
    result = compute_distribution(TRIALS, concurrency=1)
    assert result.executed == TRIALS and result.extra == 0
    assert (result.distribution.row_sums() == TRIALS).all()

def test_multi_worker_matches_shape_of_single_worker():
    total = 12 * WORKERS
    single = compute_distribution(total, concurrency=1, seed=5)
    multi = compute_distribution(total, concurrency=WORKERS, seed=5)
    assert multi.per_worker == 12
    assert (single.distribution.row_sums() == total).all()
    assert (multi.distribution.row_sums() == total).all()

def test_rounding_reports_excess(caplog):
    with caplog.at_level(logging.INFO, logger="ksd"):
        result = compute_distribution(10, concurrency=4)
    assert result.requested == 10
    assert result.executed == 12 and result.extra == 2
    assert result.distribution.num_trials() == 12
    assert "2 additional trials" in caplog.text

def test_seeded_runs_are_reproducible():
    a = compute_distribution(20, concurrency=2, seed=1234)
    b = compute_distribution(20, concurrency=2, seed=1234)
    c = compute_distribution(20, concurrency=2, seed=4321)
    assert a.distribution == b.distribution
    assert a.distribution != c.distribution

def test_initial_table_is_folded_in():
    seed_table = compute_distribution(7, concurrency=1, seed=9).distribution
    before = seed_table.copy()
    result = compute_distribution(5, concurrency=1, initial=seed_table, seed=10)
    assert result.distribution.num_trials() == 12
    assert seed_table == before

def test_strict_key_policy_rejects_before_running():
    with pytest.raises(ValueError):
        compute_distribution(4, concurrency=1, key_len=5, policy="strict")
    result = compute_distribution(4, concurrency=1, key_len=5, policy="warn")
    assert result.distribution.num_trials() == 4

def test_self_test_failure_blocks_trials(monkeypatch):
    monkeypatch.setattr(ksd.RC4, "test", staticmethod(lambda: False))
    with pytest.raises(SelfTestFailure):
        compute_distribution(4, concurrency=1)

def test_merge_files():
    a = compute_distribution(6, concurrency=1, seed=1).distribution
    b = compute_distribution(4, concurrency=1, seed=2).distribution
    with tempfile.TemporaryDirectory() as tmp:
        pa, pb, out = (os.path.join(tmp, n) for n in ("a.txt", "b.txt", "out.txt"))
        a.write_to_file(pa); b.write_to_file(pb)
        merged = merge_files([pa, pb, pa], output=out)
        assert merged.num_trials() == 16
        assert KeystreamDistribution.read_from_file(out) == merged

        with pytest.raises(UsageError):
            merge_files([pa])
        with pytest.raises(UsageError):
            merge_files([])

        bad = os.path.join(tmp, "bad.txt")
        with open(bad, "w") as f:
            f.write("garbage\n")
        out2 = os.path.join(tmp, "out2.txt")
        with pytest.raises(FormatError) as exc:
            merge_files([pa, bad], output=out2)
        assert exc.value.source == bad
        assert not os.path.exists(out2)

        with pytest.raises(OSError):
            merge_files([pa, os.path.join(tmp, "missing.txt")], output=out2)
        assert not os.path.exists(out2)

def test_parse_trials():
    import argparse
    assert parse_trials("1024") == 1024
    assert parse_trials("2^10") == 1024
    assert parse_trials("2^0") == 1
    for bad in ("abc", "2^x", "2^-1", "-5", "", "1_000", " 12", "12 ", "+5", "2^", "2^ 3", "0x10"):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_trials(bad)

def test_cli_end_to_end():
    with tempfile.TemporaryDirectory() as tmp:
        dist, merged = os.path.join(tmp, "dist.txt"), os.path.join(tmp, "merged.txt")
        assert main(["compute", "--trials", "100", "--concurrency", "1", "--output", dist]) == 0
        d = KeystreamDistribution.read_from_file(dist)
        assert (d.row_sums() == 100).all()

        assert main(["merge", dist, dist, "--output", merged]) == 0
        m = KeystreamDistribution.read_from_file(merged)
        assert (m.row_sums() == 200).all()

        again = os.path.join(tmp, "again.txt")
        assert main(["compute", "--trials", "2^3", "--concurrency", "3",
                     "--input", merged, "--output", again]) == 0
        assert KeystreamDistribution.read_from_file(again).num_trials() == 209

def test_cli_writes_stdout_and_heatmap(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        png = os.path.join(tmp, "bias.png")
        assert main(["compute", "--trials", "3", "--concurrency", "1", "--heatmap", png]) == 0
        out = capsys.readouterr().out
        assert KeystreamDistribution.deserialize(out).num_trials() == 3
        assert os.path.exists(png)

        table = os.path.join(tmp, "t.txt")
        KeystreamDistribution.deserialize(out).write_to_file(table)
        png2 = os.path.join(tmp, "bias2.png")
        assert main(["heatmap", table, "--output", png2, "--scale", "1"]) == 0
        assert os.path.exists(png2)

def test_cli_failures(capsys):
    assert main(["help"]) == 0
    assert "compute" in capsys.readouterr().out
    assert main([]) == 1

    with tempfile.TemporaryDirectory() as tmp:
        good = os.path.join(tmp, "good.txt")
        KeystreamDistribution().write_to_file(good)
        out = os.path.join(tmp, "out.txt")
        assert main(["merge", good, "--output", out]) == 1
        assert main(["merge", good, os.path.join(tmp, "nope.txt"), "--output", out]) == 1
        bad = os.path.join(tmp, "bad.txt")
        with open(bad, "w") as f:
            f.write("cnt[5][300]\t1\n")
        assert main(["merge", good, bad, "--output", out]) == 1
        assert not os.path.exists(out)
        assert main(["compute", "--trials", "2", "--concurrency", "1",
                     "--key-length", "5", "--strict-key-length", "--output", out]) == 1
        assert not os.path.exists(out)
        unwritable_png = os.path.join(tmp, "no-such-dir", "bias.png")
        assert main(["compute", "--trials", "2", "--concurrency", "1",
                     "--heatmap", unwritable_png, "--output", out]) == 1
        assert not os.path.exists(out)

    with pytest.raises(SystemExit) as exc:
        main(["compute", "--trials", "lots"])
    assert exc.value.code != 0
    with pytest.raises(SystemExit):
        main(["bogus"])

if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
