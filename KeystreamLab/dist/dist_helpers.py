import os, sys, base64, hashlib, time, zlib


PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from keystream_dist_cli import KeystreamDistribution, FormatError

DEFAULT_SERVER = os.getenv("KSD_SERVER", "http://127.0.0.1:8000")
COMPRESS_LEVEL = 6


class EnvelopeError(ValueError):
    pass


def encode_table(dist: KeystreamDistribution, worker: str) -> dict:
    """Pack a distribution for transport: compressed text form plus its digest and trial count."""
    raw = dist.serialize().encode("ascii")
    return {
        "worker": worker,
        "trials": dist.num_trials(),
        "table_b64": base64.b64encode(zlib.compress(raw, COMPRESS_LEVEL)).decode("ascii"),
        "sha256": hashlib.sha256(raw).hexdigest(),
        "sent_at": time.time(),
    }

def decode_envelope(env: dict) -> KeystreamDistribution:
    worker = env.get("worker", "?")
    try:
        raw = zlib.decompress(base64.b64decode(env["table_b64"], validate=True))
    except KeyError as e:
        raise EnvelopeError(f"envelope from {worker} has no {e.args[0]!r}") from e
    except (ValueError, zlib.error) as e:
        raise EnvelopeError(f"undecodable table from {worker}: {e}") from e
    if hashlib.sha256(raw).hexdigest() != env.get("sha256"):
        raise EnvelopeError(f"sha256 mismatch in table from {worker}")
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError as e:
        raise EnvelopeError(f"table from {worker} is not ASCII") from e

    dist = KeystreamDistribution.deserialize(text, source=f"envelope from {worker}")
    try:
        trials = dist.check_row_sums()
    except ValueError as e:
        raise EnvelopeError(f"inconsistent table from {worker}: {e}") from e
    if trials != env.get("trials"):
        raise EnvelopeError(f"table from {worker} holds {trials} trials, envelope claims {env.get('trials')}")
    return dist


__all__ = ["DEFAULT_SERVER", "EnvelopeError", "FormatError", "KeystreamDistribution",
           "decode_envelope", "encode_table"]
