"""
Deterministic portfolio stress simulation.

Each scenario seeds its own random generator from a hash of the scenario
definition, so the same scenario over the same positions always produces
the same result.

File: backend/txguard/security/stress_testing.py
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Sequence

import numpy as np

from .models import Position

SIMULATION_PATHS = 512
DRAWDOWN_PERCENTILE = 95


@dataclass(frozen=True)
class StressScenario:
    name: str
    market_shock: float
    liquidity_drain: float
    correlation_increase: float
    duration: timedelta
    description: str = ""

    @property
    def effective_shock(self) -> float:
        return min(1.0, self.market_shock * (1.0 + self.correlation_increase))

    def seed(self) -> int:
        key = "|".join((
            self.name,
            f"{self.market_shock:.6f}",
            f"{self.liquidity_drain:.6f}",
            f"{self.correlation_increase:.6f}",
            f"{self.duration.total_seconds():.0f}",
        ))
        return int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:8], "big")


@dataclass(frozen=True)
class ScenarioResult:
    scenario_name: str
    portfolio_loss: float
    max_drawdown: float
    liquidation_probability: float
    recovery_time: timedelta


DEFAULT_SCENARIOS = (
    StressScenario(
        name="market_crash",
        description="Broad market sell-off with correlated assets",
        market_shock=0.40,
        liquidity_drain=0.30,
        correlation_increase=0.50,
        duration=timedelta(days=30),
    ),
    StressScenario(
        name="flash_crash",
        description="Sudden intra-hour price collapse",
        market_shock=0.20,
        liquidity_drain=0.50,
        correlation_increase=0.30,
        duration=timedelta(hours=1),
    ),
    StressScenario(
        name="liquidity_crisis",
        description="Liquidity providers withdraw from pools",
        market_shock=0.15,
        liquidity_drain=0.70,
        correlation_increase=0.20,
        duration=timedelta(days=7),
    ),
    StressScenario(
        name="stablecoin_depeg",
        description="Major stablecoin loses its peg",
        market_shock=0.10,
        liquidity_drain=0.40,
        correlation_increase=0.60,
        duration=timedelta(days=3),
    ),
)


def simulate_scenario(scenario: StressScenario, positions: Sequence[Position]) -> ScenarioResult:
    """
    Run a seeded Monte Carlo simulation of one scenario.

    Args:
        scenario: Shock parameters
        positions: Portfolio positions

    Returns:
        Expected loss, tail drawdown, liquidation probability and recovery time
    """
    total_value = sum(max(p.value, 0.0) for p in positions)
    if not positions or total_value <= 0:
        return ScenarioResult(scenario.name, 0.0, 0.0, 0.0, timedelta(0))

    rng = np.random.default_rng(scenario.seed())
    shocks = np.clip(
        rng.normal(scenario.effective_shock, 0.25 * scenario.market_shock, SIMULATION_PATHS),
        0.0,
        1.0,
    )

    values = np.asarray([max(p.value, 0.0) for p in positions], dtype=float)
    leverage = np.asarray([max(p.leverage, 1.0) for p in positions], dtype=float)
    lp_drag = np.asarray(
        [0.5 * scenario.liquidity_drain if p.is_liquidity_position else 0.0 for p in positions],
        dtype=float,
    )

    # paths x positions
    loss_fraction = np.minimum(1.0, shocks[:, None] * leverage[None, :] * (1.0 + lp_drag[None, :]))
    path_losses = (loss_fraction * values[None, :]).sum(axis=1) / total_value

    leveraged = [p for p in positions if p.debt_value > 0]
    if leveraged:
        collateral = np.asarray([p.collateral_value for p in leveraged], dtype=float)
        debt = np.asarray([max(p.debt_value, 1.0) for p in leveraged], dtype=float)
        stressed_health = collateral[None, :] * (1.0 - shocks[:, None]) / debt[None, :]
        liquidation_probability = float(np.mean(np.any(stressed_health < 1.0, axis=1)))
    else:
        liquidation_probability = 0.0

    portfolio_loss = float(np.mean(path_losses))
    max_drawdown = float(np.percentile(path_losses, DRAWDOWN_PERCENTILE))
    recovery_time = scenario.duration * (1.0 + 10.0 * portfolio_loss)

    return ScenarioResult(
        scenario_name=scenario.name,
        portfolio_loss=portfolio_loss,
        max_drawdown=max_drawdown,
        liquidation_probability=liquidation_probability,
        recovery_time=recovery_time,
    )


def run_scenarios(scenarios: Sequence[StressScenario], positions: Sequence[Position]) -> List[ScenarioResult]:
    return [simulate_scenario(s, positions) for s in scenarios]
