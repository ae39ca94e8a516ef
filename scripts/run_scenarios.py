#!/usr/bin/env python3
"""
Run the offline triage scenarios and print what the operator would see.
"""

import logging
import sys

from live_triage.scenarios import run_all, summarize


def main() -> int:
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    print("📞 Live triage scenarios")
    print("-" * 40)

    results = run_all()
    for result in results:
        icon = "✅" if result.passed else "❌"
        route = result.route.value if result.route else "listening"
        lights = ", ".join(light.value for light in result.lights) or "-"
        segment = result.segment.value if result.segment else "-"
        print(f"{icon} {result.name}: route={route} lights=[{lights}] segment={segment}")
        if result.reason:
            print(f"   {result.reason}")
        for problem in result.problems:
            print(f"   ⚠️ {problem}")

    summary = summarize(results)
    print("-" * 40)
    print(f"{summary['passed']}/{summary['total']} passed")
    return 0 if summary["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
