#!/usr/bin/env python3
import argparse
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

TRANSITION_PATTERN = re.compile(r"request_transition=(\{.*\})")
ESTIMATE_PATTERN = re.compile(r"distance_estimate=(\{.*\})")


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def _parse_payload(line: str, pattern: re.Pattern[str]) -> Optional[Dict[str, Any]]:
    match = pattern.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except ValueError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def collect(lines: Iterable[str]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    transitions: List[Dict[str, Any]] = []
    estimates: List[Dict[str, Any]] = []
    for line in lines:
        transition = _parse_payload(line, TRANSITION_PATTERN)
        if transition:
            transitions.append(transition)
            continue
        estimate = _parse_payload(line, ESTIMATE_PATTERN)
        if estimate:
            estimates.append(estimate)
    return transitions, estimates


def build_report(transitions: List[Dict[str, Any]], estimates: List[Dict[str, Any]]) -> Dict[str, Any]:
    edge_counts: Counter[str] = Counter()
    event_counts: Counter[str] = Counter()
    cancel_roles: Counter[str] = Counter()
    created: set[str] = set()
    completed: set[str] = set()

    for row in transitions:
        from_status = row.get("from") or "-"
        to_status = str(row.get("to", "unknown"))
        edge_counts[f"{from_status}->{to_status}"] += 1
        event_counts[str(row.get("event_type", "unknown"))] += 1
        request_id = str(row.get("request_id", ""))
        if to_status == "initiated":
            created.add(request_id)
        elif to_status == "completed":
            completed.add(request_id)
        elif to_status == "cancelled":
            cancel_roles[str(row.get("actor_role", "unknown"))] += 1

    fallback_reasons: Counter[str] = Counter()
    fallback_total = 0
    cache_hits = 0
    for row in estimates:
        if bool(row.get("cache_hit", False)):
            cache_hits += 1
        if bool(row.get("is_fallback", False)):
            fallback_total += 1
            fallback_reasons[str(row.get("fallback_reason") or "unknown")] += 1

    total_estimates = len(estimates)
    completion_rate = (len(completed & created) / len(created)) if created else 0.0
    return {
        "total_transitions": len(transitions),
        "edge_counts": dict(edge_counts),
        "event_counts": dict(event_counts),
        "cancellations_by_role": dict(cancel_roles),
        "requests_created": len(created),
        "requests_completed": len(completed),
        "completion_rate": round(completion_rate, 4),
        "estimates": {
            "total": total_estimates,
            "fallback": fallback_total,
            "fallback_rate": round(fallback_total / total_estimates, 4) if total_estimates else 0.0,
            "cache_hit_rate": round(cache_hits / total_estimates, 4) if total_estimates else 0.0,
            "fallback_reasons": dict(fallback_reasons.most_common()),
        },
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total transitions: {report['total_transitions']}")
    print(
        f"Requests: created={report['requests_created']} completed={report['requests_completed']} "
        f"completion_rate={report['completion_rate']:.2%}"
    )
    print("Transitions:")
    for edge, count in sorted(report["edge_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {edge}: {count}")
    if report["cancellations_by_role"]:
        print("Cancellations by role:")
        for role, count in report["cancellations_by_role"].items():
            print(f"  - {role}: {count}")
    estimates = report["estimates"]
    print(
        f"Distance estimates: total={estimates['total']} fallback={estimates['fallback']} "
        f"fallback_rate={estimates['fallback_rate']:.2%} cache_hit_rate={estimates['cache_hit_rate']:.2%}"
    )
    for reason, count in estimates["fallback_reasons"].items():
        print(f"  - {reason}: {count}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize request_transition and distance_estimate logs.")
    parser.add_argument("log_files", nargs="*", help="Log files to parse. If omitted, read stdin.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    transitions, estimates = collect(_iter_lines(args.log_files))
    report = build_report(transitions, estimates)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
