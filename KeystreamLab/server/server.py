import os, time, logging, threading
from typing import List, Dict
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from ..dist.dist_helpers import decode_envelope, KeystreamDistribution

app = FastAPI(title="Keystream distribution collector")
logger = logging.getLogger("ksd.server")

STORE_PATH = os.getenv("KSD_STORE_PATH") or os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "store", "distribution.txt"))

def _load_store() -> KeystreamDistribution:
    if os.path.exists(STORE_PATH):
        logger.info("loading stored distribution from %s", STORE_PATH)
        dist = KeystreamDistribution.read_from_file(STORE_PATH)
        try:
            dist.check_row_sums()
        except ValueError as e:
            raise ValueError(f"{STORE_PATH}: inconsistent stored distribution: {e}") from e
        return dist
    return KeystreamDistribution()

def _persist(dist: KeystreamDistribution) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(STORE_PATH)), exist_ok=True)
    dist.write_to_file(STORE_PATH)

LOCK = threading.Lock()
DISTRIBUTION = _load_store()
SUBMISSIONS: List[Dict] = []

class TableEnvelope(BaseModel):
    worker: str
    trials: int
    table_b64: str
    sha256: str
    sent_at: float

@app.post("/submit")
def submit_table(env: TableEnvelope):
    global DISTRIBUTION
    try:
        dist = decode_envelope(env.model_dump())
    except ValueError as e:
        logger.warning("rejected table from %s: %s", env.worker, e)
        raise HTTPException(status_code=400, detail=str(e))

    with LOCK:
        merged = DISTRIBUTION + dist
        _persist(merged)
        DISTRIBUTION = merged
        SUBMISSIONS.append({"worker": env.worker, "trials": env.trials,
                            "sent_at": env.sent_at, "received_at": time.time()})
        total = merged.num_trials()
    logger.info("merged %d trials from %s (total %d)", env.trials, env.worker, total)
    return {"stored": True, "trials": env.trials, "total_trials": total}

@app.get("/status")
def status():
    with LOCK:
        workers: Dict[str, int] = {}
        for s in SUBMISSIONS:
            workers[s["worker"]] = workers.get(s["worker"], 0) + s["trials"]
        return {"total_trials": DISTRIBUTION.num_trials(),
                "submissions": len(SUBMISSIONS),
                "workers": workers}

@app.get("/distribution", response_class=PlainTextResponse)
def distribution():
    with LOCK:
        return PlainTextResponse(DISTRIBUTION.serialize())

@app.post("/reset")
def reset():
    global DISTRIBUTION
    with LOCK:
        fresh = KeystreamDistribution()
        _persist(fresh)
        DISTRIBUTION = fresh
        SUBMISSIONS.clear()
    return {"reset": True}
