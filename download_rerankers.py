"""Pre-fetch the cross-encoder rerankers so the service can start offline."""

from pathlib import Path
import os
import sys

from huggingface_hub import snapshot_download
from litrank import config


def fetch(repo_id: str) -> str:
    print(f"\nDownloading repo: {repo_id}")
    local_path = snapshot_download(repo_id=repo_id, local_files_only=False)
    print(f"Cached at: {local_path}")

    if not (Path(local_path) / "config.json").exists():
        print(f"  WARNING: config.json NOT found in: {local_path}")
    return local_path


def main(repo_ids=None) -> int:
    os.environ.update(config.HF_ENV_VARS)
    os.environ["HF_HUB_OFFLINE"] = "0"  # allow downloads just for this script

    cache_root = Path(os.environ.get("TRANSFORMERS_CACHE", str(config.MODELS_DIR))).resolve()
    print(f"Using TRANSFORMERS_CACHE: {cache_root}")

    failed = []
    paths = {}
    for rid in repo_ids or config.RERANKER_CANDIDATES:
        try:
            paths[rid] = fetch(rid)
        except Exception as e:
            print(f"  FAILED: {rid}: {e}")
            failed.append(rid)

    print("\nSummary:")
    for rid, path in paths.items():
        print(f"  {rid:<45} {path}")
    for rid in failed:
        print(f"  {rid:<45} not downloaded")
    # one usable model is enough for the reranker to come up
    return 0 if paths else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:] or None))
