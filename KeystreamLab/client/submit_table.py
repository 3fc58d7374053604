import os, sys, requests
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
sys.path.insert(0, PROJECT_ROOT)
from KeystreamLab.dist.dist_helpers import encode_table, KeystreamDistribution

def submit_file(server: str, worker: str, path: str) -> dict:
    dist = KeystreamDistribution.read_from_file(path)
    env = encode_table(dist, worker)
    r = requests.post(f"{server}/submit", json=env, timeout=60)
    r.raise_for_status()
    return r.json()

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 3:
        print("Usage: python3 submit_table.py <server_base_url> <worker_name> <table_file>")
        sys.exit(1)

    server, worker, path = argv[:3]
    print(submit_file(server.rstrip("/"), worker, path))

if __name__ == "__main__":
    main()
