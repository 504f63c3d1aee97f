#!/usr/bin/env python3
"""
EOS Fusion Validation Script
Runs randomized scenarios through the fusion engine and checks result invariants.
"""
import sys
import os
import random
import json
import argparse
from datetime import date, timedelta
from typing import List, Dict, Any

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.services.eos_fusion_service import (
    calculate_fused_eos,
    METHODS,
    PHENOLOGICAL_STAGES,
    WATER_STRESS_LEVELS,
)
from app.services.eos_fusion_rules import DEFAULT_CONFIG

CROPS = ["SOJA", "MILHO", "ALGODAO", "TRIGO", "FEIJAO", "CAFE", ""]
GDD_LEVELS = ["HIGH", "MEDIUM", "LOW"]

TODAY = date(2025, 3, 1)


def random_scenario(rng: random.Random, today: date) -> Dict[str, Any]:
    planting = today - timedelta(days=rng.randint(30, 160))
    has_ndvi = rng.random() < 0.75
    has_gdd = rng.random() < 0.75
    gdd_required = rng.choice([1200.0, 1350.0, 1500.0]) if has_gdd else 0.0

    scenario = {
        "planting_date": planting.isoformat(),
        "crop_type": rng.choice(CROPS),
        "eos_ndvi": (today + timedelta(days=rng.randint(-30, 60))).isoformat() if has_ndvi else None,
        "ndvi_confidence": rng.randint(0, 100) if has_ndvi else 0,
        "current_ndvi": round(rng.uniform(0.15, 0.9), 2),
        "peak_ndvi": round(rng.uniform(0.6, 0.95), 2),
        "ndvi_decline_rate": round(rng.uniform(-1.0, 3.0), 2),
        "eos_gdd": (today + timedelta(days=rng.randint(-30, 60))).isoformat() if has_gdd else None,
        "gdd_confidence": rng.choice(GDD_LEVELS),
        "gdd_accumulated": round(gdd_required * rng.uniform(0.2, 1.3), 1),
        "gdd_required": gdd_required,
        "water_stress_level": rng.choice(WATER_STRESS_LEVELS),
        "stress_days": rng.choice([None, rng.randint(0, 40)]),
        "yield_impact": rng.choice([None, round(rng.uniform(-40, 0), 1)]),
    }
    if rng.random() < 0.4:
        scenario["fusion_metrics"] = {
            "gaps_filled": rng.randint(0, 6),
            "max_gap_days": rng.randint(0, 15),
            "radar_contribution": round(rng.uniform(0, 1), 2),
            "continuity_score": round(rng.uniform(0.5, 1), 2),
            "is_beta": rng.random() < 0.5,
        }
    return scenario


def check_invariants(scenario: Dict[str, Any], result, today: date) -> List[str]:
    issues = []
    if result.eos is None:
        issues.append("eos missing")
        return issues
    if result.method not in METHODS:
        issues.append(f"unknown method {result.method}")
    if not 0 <= result.confidence <= 100:
        issues.append(f"confidence out of range: {result.confidence}")
    if result.phenological_stage not in PHENOLOGICAL_STAGES:
        issues.append(f"unknown stage {result.phenological_stage}")
    if result.passed != (result.eos < today):
        issues.append("passed inconsistent with eos")
    if result.projections.water_adjustment > 0:
        issues.append(f"positive water adjustment {result.projections.water_adjustment}")

    no_projection = scenario["eos_ndvi"] is None and scenario["eos_gdd"] is None
    if no_projection and result.confidence > DEFAULT_CONFIG.no_data_confidence_cap:
        issues.append(f"no-data confidence above cap: {result.confidence}")

    progress = scenario["gdd_accumulated"] / scenario["gdd_required"] if scenario["gdd_required"] else 0
    active_canopy = (
        progress >= 1.0
        and scenario["current_ndvi"] > DEFAULT_CONFIG.ndvi_active_canopy
        and scenario["ndvi_decline_rate"] <= DEFAULT_CONFIG.slow_decline_rate
    )
    if active_canopy:
        if result.phenological_stage == "MATURITY":
            issues.append("MATURITY declared with active canopy")
        if result.confidence > DEFAULT_CONFIG.conflict_confidence_cap:
            issues.append(f"conflict confidence above cap: {result.confidence}")
    if result.phenological_stage == "MATURITY" and scenario["current_ndvi"] >= DEFAULT_CONFIG.ndvi_senescence_start:
        issues.append(f"MATURITY declared with NDVI {scenario['current_ndvi']}")
    return issues


def run_validation(num_tests: int = 500, seed: int = 42, today: date = TODAY) -> Dict[str, Any]:
    rng = random.Random(seed)
    stats = {
        "total_tests": num_tests,
        "failed": 0,
        "errors": 0,
        "methods": {m: 0 for m in METHODS},
        "stages": {s: 0 for s in PHENOLOGICAL_STAGES},
    }
    failures = []

    for test_id in range(1, num_tests + 1):
        scenario = random_scenario(rng, today)
        try:
            result = calculate_fused_eos(scenario, today=today)
        except Exception as e:
            stats["errors"] += 1
            failures.append({"test_id": test_id, "issue": f"{type(e).__name__}: {e}", "scenario": scenario})
            continue

        stats["methods"][result.method] += 1
        stats["stages"][result.phenological_stage] += 1
        issues = check_invariants(scenario, result, today)
        if issues:
            stats["failed"] += 1
            failures.append({"test_id": test_id, "issue": "; ".join(issues), "scenario": scenario})

    return {"stats": stats, "failures": failures, "seed": seed, "today": today.isoformat()}


def print_summary(validation: Dict[str, Any]):
    stats = validation["stats"]
    print("=" * 70)
    print(f"EOS FUSION VALIDATION - {stats['total_tests']} scenarios (seed {validation['seed']})")
    print("=" * 70)
    print(f"Invariant failures: {stats['failed']}")
    print(f"Engine errors:      {stats['errors']}")
    print("\nMethods:")
    for method, count in stats["methods"].items():
        print(f"  {method:<15} {count}")
    print("\nStages:")
    for stage, count in stats["stages"].items():
        print(f"  {stage:<15} {count}")

    failures = validation["failures"]
    if failures:
        print("\nFirst failures:")
        for failure in failures[:10]:
            print(f"  #{failure['test_id']}: {failure['issue']}")
    print("=" * 70)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="EOS Fusion invariant validation")
    parser.add_argument("--scenarios", type=int, default=500, help="Number of scenarios")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for reproducibility")
    parser.add_argument("--output", type=str, default=None, help="Write the JSON report to this path")
    args = parser.parse_args()

    validation = run_validation(num_tests=args.scenarios, seed=args.seed)
    print_summary(validation)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(validation, f, indent=2, ensure_ascii=False)
        print(f"\n[Report saved: {args.output}]")

    sys.exit(1 if validation["stats"]["failed"] or validation["stats"]["errors"] else 0)
