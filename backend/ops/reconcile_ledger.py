from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from tradesafe import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Recompute wallet balances from the ledger and report drift.")
    parser.add_argument("--since", default="", help="Optional since marker recorded in the report.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    parser.add_argument("--no-freeze", action="store_true", help="Report drift without freezing wallets.")
    args = parser.parse_args()

    _bootstrap_app()
    from tradesafe.extensions import db
    from tradesafe.services.reconciliation_service import persist_report, recompute_wallet_balances

    summary = recompute_wallet_balances(db.session, freeze=not args.no_freeze, since=(args.since or None))
    if args.persist:
        row = persist_report(db.session, summary, created_by="ops")
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2, default=str))
    drift_count = int(summary.get("drift_count") or 0)
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
