from __future__ import annotations

import sqlite3
import sys
from pathlib import Path


def _p95(values: list[float]) -> float:
    values = sorted(values)
    return values[int(0.95 * (len(values) - 1))]


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    dbs = [Path(arg) for arg in args] or sorted(Path(".").glob("terratest_ledger*.db"))
    if not dbs:
        print("No ledger databases found.")
        return 0

    runs: list[tuple[str, str, str | None, str]] = []
    span_rows: list[tuple[float, str, int]] = []
    events: list[tuple[str, str, str, str | None, str, str]] = []
    for db in dbs:
        conn = sqlite3.connect(db)
        try:
            runs.extend(conn.execute("SELECT id, name, region, state FROM scenario_runs"))
            span_rows.extend(conn.execute("SELECT duration_ms, name, attempt FROM step_spans"))
            events.extend(
                conn.execute(
                    "SELECT run_id, resource_type, resource_id, region, action, status FROM resource_events"
                )
            )
        finally:
            conn.close()

    if not runs:
        print("No scenario_runs rows found.")
        return 0

    states: dict[str, int] = {}
    for _run_id, _name, _region, state in runs:
        states[state] = states.get(state, 0) + 1
    print(f"runs={len(runs)}  " + "  ".join(f"{state}={count}" for state, count in sorted(states.items())))

    if span_rows:
        span_buckets: dict[str, list[float]] = {}
        retried: dict[str, int] = {}
        for duration, name, attempt in span_rows:
            span_buckets.setdefault(name, []).append(duration)
            if attempt > 1:
                retried[name] = retried.get(name, 0) + 1

        print("\nStep p95 by name:")
        summary = sorted(
            ((_p95(durs), len(durs), name) for name, durs in span_buckets.items()), reverse=True
        )
        for p95, count, name in summary[:10]:
            print(f"p95={p95:9.2f}ms  count={count:3d}  retries={retried.get(name, 0):3d}  {name}")

    balance: dict[tuple[str, str, str], int] = {}
    regions: dict[tuple[str, str, str], str | None] = {}
    for run_id, resource_type, resource_id, region, action, status in events:
        if status != "ok":
            continue
        key = (run_id, resource_type, resource_id)
        regions[key] = region
        balance[key] = balance.get(key, 0) + (1 if action == "create" else -1)

    leaked = sorted(key for key, count in balance.items() if count > 0)
    if leaked:
        print("\nResources never torn down:")
        for run_id, resource_type, resource_id in leaked:
            print(f"{run_id}  {resource_type}  {resource_id}  {regions[(run_id, resource_type, resource_id)]}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
