import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from ownership_platform.config import load_config
from ownership_platform.db import Gateway


def main() -> None:
    cfg = load_config()
    cfg.require_credentials()
    gw = Gateway.from_config(cfg)
    gw.init_schema()
    print(f"DB initialized: {gw.dialect}")


if __name__ == "__main__":
    main()
