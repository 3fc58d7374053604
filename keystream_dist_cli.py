# keystream_dist_cli.py
# RC4 keystream generator + per-position byte distribution (compute / merge / heatmap)
from __future__ import annotations
import argparse, logging, os, re, stat, sys, tempfile
import multiprocessing as mp
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TextIO
import numpy as np

N = 256
KEY_LEN = 16
SAMPLE_LEN = 256
KEY_POLICIES = ("warn", "strict", "allow")
MAX_COUNT = (1 << 64) - 1

DEFAULT_KEY_LEN = int(os.getenv("KSD_KEY_LEN", str(KEY_LEN)))
DEFAULT_CONCURRENCY = int(os.getenv("KSD_CONCURRENCY", "0")) or os.cpu_count() or 1

logger = logging.getLogger("ksd")

_POSITIONS = np.arange(SAMPLE_LEN)


class SelfTestFailure(RuntimeError):
    """Keystream generator output did not match the reference vectors."""


class UsageError(ValueError):
    pass


class FormatError(ValueError):
    """A persisted distribution could not be parsed."""

    def __init__(self, message: str, source: Optional[str] = None, lineno: Optional[int] = None):
        self.source, self.lineno = source, lineno
        where = source or "<text>"
        if lineno is not None:
            where = f"{where}:{lineno}"
        super().__init__(f"{where}: {message}")


# RFC 6229, 128-bit key 0x0102030405060708090a0b0c0d0e0f10.
# The vectors are non-contiguous 16-byte segments of the keystream, keyed by offset.
REFERENCE_KEY = bytes(range(1, 17))
REFERENCE_KEYSTREAM = {
    0:    "9ac7cc9a609d1ef7b2932899cde41b97",
    16:   "5248c4959014126a6e8a84f11d1a9e1c",
    240:  "065902e4b620f6cc36c8589f66432f2b",
    256:  "d39d566bc6bce3010768151549f3873f",
    496:  "b6d1e6c4a5e4771cad79538df295fb11",
    512:  "c68c1d5c559a974123df1dbc52a43b89",
    752:  "c5ecf88de897fd57fed301701b82a259",
    768:  "eccbe13de1fcc91c11a0b26c0bc8fa4d",
    1008: "e7a72574f8782ae26aabcf9ebcd66065",
    1024: "bdf0324e6083dcc6d3cedd3ca8c53c16",
    1520: "b40110c4190b5622a96116b0017ed297",
    1536: "ffa0b514647ec04f6306b892ae661181",
    2032: "d03d1bc03cd33d70dff9fa5d71963ebd",
    2048: "8a44126411eaa78bd51e8d87a8879bf5",
    3056: "fabeb76028ade2d0e48722e46c4615a3",
    3072: "c05d88abd50357f935a63c59ee537623",
    4080: "ff38265c1642c1abe8d3c2fe5e572bf8",
    4096: "a36a4c301ae8ac13610ccbc12256cacc",
}


def check_key_length(key_len: int, policy: str = "warn") -> None:
    if policy not in KEY_POLICIES:
        raise ValueError(f"unknown key length policy {policy!r} (expected one of {', '.join(KEY_POLICIES)})")
    if key_len < 1:
        raise ValueError("RC4 key must be non-empty")
    if key_len == KEY_LEN:
        return
    if policy == "strict":
        raise ValueError(f"RC4 key length {key_len} rejected; only {KEY_LEN}-byte keys are validated")
    if policy == "warn":
        logger.warning("warning: RC4 not yet tested with key length %d", key_len)


def _ksa(key: bytes) -> List[int]:
    S = list(range(N))
    j, klen = 0, len(key)
    for i in range(N):
        j = (j + S[i] + key[i % klen]) % N
        S[i], S[j] = S[j], S[i]
    return S


class RC4:
    """RC4 keystream generator.

    A deliberately weak cipher, used here only as a statistical test subject.
    ``advance(n)`` performs the same state transition as ``write_keystream(n)``
    but discards the output bytes.
    """

    def __init__(self, key: bytes, policy: str = "warn"):
        check_key_length(len(key), policy)
        self.S = _ksa(key)
        self.i = 0; self.j = 0

    def write_keystream(self, n: int) -> bytes:
        S, i, j = self.S, self.i, self.j
        out = bytearray(n)
        for k in range(n):
            i = (i + 1) % N
            j = (j + S[i]) % N
            S[i], S[j] = S[j], S[i]
            out[k] = S[(S[i] + S[j]) % N]
        self.i, self.j = i, j
        return bytes(out)

    def advance(self, n: int) -> None:
        S, i, j = self.S, self.i, self.j
        for _ in range(n):
            i = (i + 1) % N
            j = (j + S[i]) % N
            S[i], S[j] = S[j], S[i]
        self.i, self.j = i, j

    def permutation(self) -> List[int]:
        return list(self.S)

    @staticmethod
    def test() -> bool:
        rc4 = RC4(REFERENCE_KEY)
        expected, got = [], []
        pos = 0
        for offset in sorted(REFERENCE_KEYSTREAM):
            segment = bytes.fromhex(REFERENCE_KEYSTREAM[offset])
            rc4.advance(offset - pos)
            got.append(rc4.write_keystream(len(segment)))
            expected.append(segment)
            pos = offset + len(segment)
        if got != expected:
            logger.error("error: rc4 output did not match reference keystream in static test")
            logger.error("key:        %s", REFERENCE_KEY.hex())
            logger.error("keystream:  %s", b"".join(expected).hex())
            logger.error("keystream2: %s", b"".join(got).hex())
            return False
        return True


def require_self_test() -> None:
    if not RC4.test():
        raise SelfTestFailure("rc4 failed self-test")


class KeystreamDistribution:
    """256x256 table; ``count[i][j]`` is the number of trials whose keystream byte ``i`` equalled ``j``."""

    _LINE = re.compile(r"cnt\[(0|[1-9][0-9]*)\]\[(0|[1-9][0-9]*)\]\t([0-9]+)")

    def __init__(self, counts=None):
        if counts is None:
            self._count = np.zeros((N, N), dtype=np.uint64)
            return
        arr = np.asarray(counts)
        if arr.shape != (N, N):
            raise ValueError(f"distribution must have shape {(N, N)}, got {arr.shape}")
        if arr.dtype.kind not in "iu":
            raise ValueError(f"distribution counts must be integers, got {arr.dtype}")
        if arr.dtype.kind == "i" and (arr < 0).any():
            raise ValueError("distribution counts must be non-negative")
        self._count = arr.astype(np.uint64, copy=True)

    @classmethod
    def zero(cls) -> "KeystreamDistribution":
        return cls()

    @property
    def counts(self) -> np.ndarray:
        view = self._count.view()
        view.flags.writeable = False
        return view

    def __getitem__(self, idx):
        i, j = idx
        return int(self._count[_check_index(i), _check_index(j)])

    def increment(self, i: int, j: int) -> None:
        self._count[_check_index(i), _check_index(j)] += 1

    def add_keystream(self, keystream: bytes) -> None:
        ks = np.frombuffer(keystream, dtype=np.uint8)
        if ks.size != SAMPLE_LEN:
            raise ValueError(f"keystream sample must be {SAMPLE_LEN} bytes, got {ks.size}")
        # one cell per row, so the fancy-indexed add never hits the same cell twice
        self._count[_POSITIONS, ks] += 1

    def merge_into(self, other: "KeystreamDistribution") -> None:
        self._count += other._count

    def __add__(self, other: "KeystreamDistribution") -> "KeystreamDistribution":
        if not isinstance(other, KeystreamDistribution):
            return NotImplemented
        return merge(self, other)

    def __eq__(self, other) -> bool:
        if not isinstance(other, KeystreamDistribution):
            return NotImplemented
        return bool(np.array_equal(self._count, other._count))

    def copy(self) -> "KeystreamDistribution":
        return KeystreamDistribution(self._count)

    def row_sums(self) -> np.ndarray:
        return self._count.sum(axis=1, dtype=np.uint64)

    def check_row_sums(self) -> int:
        sums = self.row_sums()
        if not (sums == sums[0]).all():
            raise ValueError(f"row sums disagree (min {int(sums.min())}, max {int(sums.max())})")
        return int(sums[0])

    def num_trials(self) -> int:
        return self.check_row_sums()

    def serialize(self) -> str:
        rows = self._count.tolist()
        return "".join(f"cnt[{i}][{j}]\t{c}\n" for i, row in enumerate(rows) for j, c in enumerate(row))

    def fprint(self, f: TextIO) -> None:
        f.write(self.serialize())

    @classmethod
    def deserialize(cls, text: str, source: Optional[str] = None) -> "KeystreamDistribution":
        count = np.zeros((N, N), dtype=np.uint64)
        seen = np.zeros((N, N), dtype=bool)
        lines = text.split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        for lineno, line in enumerate(lines, start=1):
            m = cls._LINE.fullmatch(line)
            if m is None:
                raise FormatError(f"malformed line {line[:40]!r}", source, lineno)
            i, j, c = int(m.group(1)), int(m.group(2)), int(m.group(3))
            if i >= N or j >= N:
                raise FormatError(f"index out of range in {line!r}", source, lineno)
            if c > MAX_COUNT:
                raise FormatError(f"count too large in {line!r}", source, lineno)
            if seen[i, j]:
                raise FormatError(f"duplicate cell cnt[{i}][{j}]", source, lineno)
            seen[i, j] = True
            count[i, j] = c
        missing = int(seen.size - seen.sum())
        if missing:
            raise FormatError(f"{missing} of {N * N} cells missing", source)
        dist = cls()
        dist._count = count
        return dist

    @classmethod
    def read_from_file(cls, path: str) -> "KeystreamDistribution":
        with open(path, "r", encoding="ascii") as f:
            try:
                text = f.read()
            except UnicodeDecodeError as e:
                raise FormatError(f"not an ASCII distribution file ({e.reason})", path) from e
        return cls.deserialize(text, source=path)

    def write_to_file(self, path: str) -> None:
        _atomic_write_text(path, self.serialize())


def _check_index(x: int) -> int:
    if not 0 <= x < N:
        raise IndexError(f"index {x} outside [0, {N})")
    return x


def _output_mode(path: str) -> int:
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _atomic_write_text(path: str, text: str) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(dir=folder, prefix=".ksd-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="ascii") as f:
            f.write(text)
        # mkstemp creates 0600; match what a plain open() would have produced
        os.chmod(tmp, _output_mode(path))
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


def merge(a: KeystreamDistribution, b: KeystreamDistribution) -> KeystreamDistribution:
    out = a.copy()
    out.merge_into(b)
    return out


class ProgressBar:
    """Terminal progress bar; silent unless ``stream`` is a TTY."""

    NON = "." * 60
    BAR = "|" * 60

    def __init__(self, stream: Optional[TextIO] = None):
        isatty = getattr(stream, "isatty", None)
        self.output = stream if isatty is not None and isatty() else None
        self.width = len(self.BAR)

    def __call__(self, done: int, total: int) -> None:
        if self.output is None or total == 0:
            return
        fraction = done / total
        lpad = int(fraction * self.width)
        self.output.write("\033[;32m")
        self.output.write(f"\r{int(fraction * 100):3d}% [{self.BAR[:lpad]}{self.NON[:self.width - lpad]}]")
        self.output.write("\033[0m")
        if done == total:
            self.output.write("\n")
        self.output.flush()


def random_key(rng: np.random.Generator, key_len: int = KEY_LEN) -> bytes:
    return rng.bytes(key_len)


def run_trial(table: KeystreamDistribution, rng: np.random.Generator,
              key_len: int = KEY_LEN, policy: str = "warn") -> None:
    kg = RC4(random_key(rng, key_len), policy=policy)
    table.add_keystream(kg.write_keystream(SAMPLE_LEN))


def run_trials(table: KeystreamDistribution, num_trials: int, rng: np.random.Generator,
               key_len: int = KEY_LEN, policy: str = "warn",
               progress: Optional[Callable[[int, int], None]] = None) -> None:
    check_key_length(key_len, policy)
    step = max(1, num_trials // 100)
    for t in range(1, num_trials + 1):
        run_trial(table, rng, key_len, policy="allow")
        if progress is not None and (t % step == 0 or t == num_trials):
            progress(t, num_trials)


@dataclass
class ComputeResult:
    distribution: KeystreamDistribution
    requested: int
    executed: int
    per_worker: int
    concurrency: int

    @property
    def extra(self) -> int:
        return self.executed - self.requested


def plan_trials(num_trials: int, concurrency: int):
    """Split ``num_trials`` over ``concurrency`` workers, rounding up. Returns (per_worker, executed)."""
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")
    if num_trials < 0:
        raise ValueError(f"number of trials must be non-negative, got {num_trials}")
    per_worker = -(-num_trials // concurrency)
    return per_worker, per_worker * concurrency


def _compute_worker(task) -> KeystreamDistribution:
    num_trials, seed_seq, key_len, show_progress = task
    rng = np.random.default_rng(seed_seq)
    dist = KeystreamDistribution()
    progress = ProgressBar(sys.stderr) if show_progress else None
    run_trials(dist, num_trials, rng, key_len=key_len, policy="allow", progress=progress)
    return dist


def compute_distribution(num_trials: int, concurrency: Optional[int] = None,
                         initial: Optional[KeystreamDistribution] = None,
                         key_len: int = KEY_LEN, policy: str = "warn",
                         seed: Optional[int] = None, progress: bool = False) -> ComputeResult:
    require_self_test()
    check_key_length(key_len, policy)
    if concurrency is None:
        concurrency = DEFAULT_CONCURRENCY
    per_worker, executed = plan_trials(num_trials, concurrency)
    if executed != num_trials:
        logger.info("performing %d additional trials (num. trials not multiple of concurrency)",
                    executed - num_trials)
    logger.info("num_trials: %d", executed)
    logger.info("concurrency: %d", concurrency)
    logger.info("trials_per_exec: %d", per_worker)

    seeds = np.random.SeedSequence(seed).spawn(concurrency)
    tasks = [(per_worker, s, key_len, progress and w == 0) for w, s in enumerate(seeds)]
    if concurrency == 1:
        partials = [_compute_worker(tasks[0])]
    else:
        with mp.Pool(concurrency) as pool:
            partials = pool.map(_compute_worker, tasks)

    total = initial.copy() if initial is not None else KeystreamDistribution()
    for part in partials:
        total.merge_into(part)
    return ComputeResult(total, num_trials, executed, per_worker, concurrency)


def merge_files(paths: Sequence[str], output: Optional[str] = None,
                stream: Optional[TextIO] = None) -> KeystreamDistribution:
    if len(paths) < 2:
        raise UsageError("fewer than two files in merge operation")
    dist = KeystreamDistribution()
    for path in paths:
        logger.info("merging in file %s", path)
        dist.merge_into(KeystreamDistribution.read_from_file(path))
    if output:
        dist.write_to_file(output)
    else:
        dist.fprint(stream if stream is not None else sys.stdout)
    return dist


# diverging ramp: under-represented cells blue, unbiased white, over-represented red
_BIAS_LEVELS = [0, 128, 255]
_BIAS_COLOURS = np.array([[0, 0, 160], [255, 255, 255], [200, 0, 0]], dtype=np.float64)
_BIAS_LUT = np.stack([np.interp(np.arange(256), _BIAS_LEVELS, _BIAS_COLOURS[:, c]) for c in range(3)],
                     axis=1).round().astype(np.uint8)

def bias_levels(dist: KeystreamDistribution, gain: float = 128.0) -> np.ndarray:
    """Map each cell's relative deviation from 1/256 onto 0..255, with 128 meaning unbiased."""
    count = dist.counts.astype(np.float64)
    rows = count.sum(axis=1, keepdims=True)
    dev = np.divide(count * N, rows, out=np.ones_like(count), where=rows > 0) - 1.0
    return np.clip(np.rint(128.0 + dev * gain), 0, 255).astype(np.uint8)

def render_heatmap(dist: KeystreamDistribution, path: str, scale: int = 2, gain: float = 128.0) -> None:
    from PIL import Image
    if scale < 1:
        raise ValueError(f"scale must be at least 1, got {scale}")
    img = Image.fromarray(_BIAS_LUT[bias_levels(dist, gain)])
    if scale > 1:
        img = img.resize((N * scale, N * scale), Image.NEAREST)
    img.save(path)


_TRIALS = re.compile(r"(2\^)?([0-9]+)")

def parse_trials(s: str) -> int:
    m = _TRIALS.fullmatch(s)
    if m is None:
        raise argparse.ArgumentTypeError(f"Bad trial count {s!r}: expected <num> or 2^<k>")
    n = int(m.group(2))
    return 1 << n if m.group(1) else n

def positive_int(s: str) -> int:
    try:
        n = int(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    if n < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {s!r}")
    return n


def _cmd_compute(args) -> int:
    logger.info("infile: %s", args.input or "[none]")
    logger.info("outfile: %s", args.output or "[none]")
    initial = None
    if args.input:
        logger.info("reading initial distribution from file %s", args.input)
        initial = KeystreamDistribution.read_from_file(args.input)
    if args.concurrency is None:
        logger.info("setting concurrency to number of cores (%d)", DEFAULT_CONCURRENCY)
    result = compute_distribution(
        args.trials, concurrency=args.concurrency, initial=initial,
        key_len=args.key_length, policy="strict" if args.strict_key_length else "warn",
        seed=args.seed, progress=True)
    if result.extra:
        logger.warning("performed %d additional trials (%d requested, %d executed)",
                       result.extra, result.requested, result.executed)
    # the heatmap can fail on a bad path; render it before any table is emitted
    if args.heatmap:
        render_heatmap(result.distribution, args.heatmap)
    if args.output:
        result.distribution.write_to_file(args.output)
    else:
        result.distribution.fprint(sys.stdout)
    return 0

def _cmd_merge(args) -> int:
    logger.info("merging %s", " ".join(args.files))
    merge_files(args.files, output=args.output)
    return 0

def _cmd_heatmap(args) -> int:
    dist = KeystreamDistribution.read_from_file(args.table)
    render_heatmap(dist, args.output, scale=args.scale)
    logger.info("wrote heatmap of %d trials to %s", dist.num_trials(), args.output)
    return 0


FILE_FORMAT_EPILOG = (
    "<num> can be an integer (e.g. 1024) or power of 2 (e.g. 2^10). "
    "Without --output the distribution is written to standard output. "
    "File format: one line 'cnt[i][j]<TAB>count' per cell, where cnt[i][j] counts "
    "the number of times the i^th byte of keystream equals j."
)

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="keystream-dist",
                                description="Empirical RC4 keystream distribution",
                                epilog=FILE_FORMAT_EPILOG)
    sub = p.add_subparsers(dest="command")

    c = sub.add_parser("compute", help="perform trials and create/update a distribution")
    c.add_argument("--trials", type=parse_trials, default=0, help="number of trials, <num> or 2^<k> (default 0)")
    c.add_argument("--input", default="", help="use the distribution in FILE as the initial distribution")
    c.add_argument("--output", default="", help="write the final distribution to FILE")
    c.add_argument("--concurrency", type=positive_int, default=None,
                   help="number of worker processes (default: KSD_CONCURRENCY or number of cores)")
    c.add_argument("--seed", type=int, default=None, help="seed for reproducible worker random streams")
    c.add_argument("--key-length", type=positive_int, default=DEFAULT_KEY_LEN,
                   help=f"RC4 key length in bytes (default {DEFAULT_KEY_LEN})")
    c.add_argument("--strict-key-length", action="store_true",
                   help=f"reject key lengths other than {KEY_LEN} instead of warning")
    c.add_argument("--heatmap", default="", help="also render a bias heatmap PNG to this path")
    c.add_argument("--verbose", action="store_true", help="verbose output to standard error")
    c.set_defaults(func=_cmd_compute)

    m = sub.add_parser("merge", help="merge two or more distribution files")
    m.add_argument("files", nargs="*", help="distribution files (at least two)")
    m.add_argument("--output", default="", help="write the merged distribution to FILE")
    m.add_argument("--verbose", action="store_true", help="verbose output to standard error")
    m.set_defaults(func=_cmd_merge)

    h = sub.add_parser("heatmap", help="render a distribution file as a bias heatmap PNG")
    h.add_argument("table", help="distribution file")
    h.add_argument("--output", required=True, help="PNG output path")
    h.add_argument("--scale", type=positive_int, default=2, help="pixels per cell (default 2)")
    h.add_argument("--verbose", action="store_true", help="verbose output to standard error")
    h.set_defaults(func=_cmd_heatmap)

    sub.add_parser("help", help="print this usage guidance")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    if args.command == "help":
        p.print_help(sys.stdout)
        return 0
    if args.command is None:
        p.print_help(sys.stderr)
        return 1

    if not logging.getLogger().handlers:
        logging.basicConfig(stream=sys.stderr, format="[%(name)s] %(message)s")
    logger.setLevel(logging.INFO if getattr(args, "verbose", False) else logging.WARNING)

    try:
        return args.func(args)
    except UsageError as e:
        logger.error("error: %s", e)
        p.print_usage(sys.stderr)
        return 1
    except (SelfTestFailure, FormatError, OSError, ValueError) as e:
        logger.error("error: %s", e)
        return 1

if __name__ == "__main__":
    sys.exit(main())
