import os, sys, requests
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
sys.path.insert(0, PROJECT_ROOT)
from KeystreamLab.dist.dist_helpers import KeystreamDistribution, DEFAULT_SERVER

def fetch_distribution(server: str) -> KeystreamDistribution:
    r = requests.get(f"{server}/distribution", timeout=60)
    r.raise_for_status()
    return KeystreamDistribution.deserialize(r.text, source=f"{server}/distribution")

def fetch_status(server: str) -> dict:
    r = requests.get(f"{server}/status", timeout=10)
    r.raise_for_status()
    return r.json()

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) > 2 or any(a in ("-h", "--help") for a in argv):
        print("Usage: python3 fetch_table.py [<server_base_url>] [<output_file>]")
        sys.exit(1)

    server = (argv[0] if argv else DEFAULT_SERVER).rstrip("/")
    status = fetch_status(server)
    print(f"[fetch] {server}: {status['total_trials']} trials from {status['submissions']} submissions",
          file=sys.stderr)
    dist = fetch_distribution(server)
    if len(argv) == 2:
        dist.write_to_file(argv[1])
    else:
        dist.fprint(sys.stdout)

if __name__ == "__main__":
    main()
