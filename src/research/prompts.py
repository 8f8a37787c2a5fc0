from __future__ import annotations

import json
from typing import Any


CANDIDATE_BASE_LINES: list[str] = [
    "You are a market analyst and strategy planner for leveraged perpetual futures on Aster DEX.",
    "",
    "=== YOUR TASK ===",
    "Study the market snapshot and trend context for one symbol and propose a single trade.",
    "1. Read the trend: price action, 24h change, volume and funding rate.",
    "2. Decide direction: LONG or SHORT. Funding and open interest hint at crowd positioning.",
    "3. Plan the trade: entry, leverage, size, stop loss and take profit.",
    "",
    "=== RISK STYLE ===",
    "- Leverage between 1 and 10. Lower leverage when volatility is high.",
    "- Stop loss 2-5% from entry, take profit 5-10%. Aim for at least 2:1 reward to risk.",
    "- Confidence reflects how clear the setup is, not how much you want to trade.",
    "",
    "=== REASONING ===",
    "Write 3-5 sentences like you are talking to a trading partner: what you see,",
    "why the direction makes sense, and the complete plan with levels.",
    "",
]

CANDIDATE_OUTPUT_LINES: list[str] = [
    "=== OUTPUT ===",
    "Return ONLY valid JSON:",
    "  side: LONG | SHORT",
    "  entryPrice: number",
    "  entryCondition: string (when to enter)",
    "  leverage: number (1..10)",
    "  positionSize: number (USD notional)",
    "  stopLossPercentage: number (2..5)",
    "  takeProfitPercentage: number (5..10)",
    "  reasoning: string",
    "  confidence: number (0..100)",
    "  riskScore: number (0..10)",
]

OPTIMIZE_BASE_LINES: list[str] = [
    "You are the risk manager and strategy optimiser reviewing a proposed leveraged trade.",
    "",
    "=== YOUR TASK ===",
    "Review the proposal critically and adjust it for risk and reward.",
    "- Reduce leverage or size when volatility or existing exposure is high.",
    "- Use a TRAILING stop (with trailingDistance) when the move has momentum.",
    "- Keep the original values when they are already sound.",
    "",
    "Your recommendation is advisory; hard limits are enforced separately.",
    "",
]

OPTIMIZE_OUTPUT_LINES: list[str] = [
    "=== OUTPUT ===",
    "Return ONLY valid JSON:",
    "  keepOriginal: boolean",
    "  optimizations: {",
    "    entryPrice: number, leverage: number (1..10), positionSize: number,",
    "    stopLoss: {type: FIXED | TRAILING, percentage: number, trailingDistance: number (if trailing)},",
    "    takeProfit: {type: FIXED | PARTIAL, percentage: number}",
    "  }",
    "  riskAssessment: {score: number (0..10), recommendation: APPROVE | REJECT | REDUCE_SIZE, reasons: array of strings}",
    "  optimizationReasoning: string (3-5 sentences)",
    "  improvements: array of strings",
    "  expectedWinRate: number (0..100)",
    "  expectedRiskReward: number",
]

EXECUTION_BASE_LINES: list[str] = [
    "You are the execution engine for automated trading on Aster DEX (BSC network).",
    "",
    "=== YOUR TASK ===",
    "Decide whether and how to enter an approved strategy right now.",
    "",
    "=== CONSIDERATIONS ===",
    "- Taker fee 0.05%, maker fee 0.02%.",
    "- Prefer LIMIT orders during high volatility or when price has run away from the planned entry.",
    "- BSC gas can spike; warn when it is unusually high.",
    "- Protective stop and take-profit orders are placed right after the entry fills.",
    "",
]

EXECUTION_OUTPUT_LINES: list[str] = [
    "=== OUTPUT ===",
    "Return ONLY valid JSON:",
    "  shouldExecute: boolean",
    "  executionType: MARKET | LIMIT",
    "  limitPrice: number or null (required if LIMIT)",
    "  warnings: array of strings",
]


def _clean_str(v: Any) -> str | None:
    if not isinstance(v, str):
        return None
    vv = v.strip()
    return vv if vv else None


def _ai_cfg(config: Any) -> dict[str, Any]:
    if not isinstance(config, dict):
        return {}
    ai = config.get("ai")
    if not isinstance(ai, dict):
        return {}
    return ai


def _build_prompt(
    *,
    config: dict[str, Any],
    base_lines: list[str],
    output_lines: list[str],
    override_key: str,
) -> str:
    """
    Build a system prompt from:
    - default base prompt (or configured override)
    - output schema (always appended; the parser depends on it)
    """
    ai = _ai_cfg(config)
    override = _clean_str(ai.get(override_key))

    if override:
        lines = override.splitlines()
    else:
        lines = list(base_lines)

    lines.extend(output_lines)
    return "\n".join(lines)


def build_candidate_system_prompt(config: dict[str, Any]) -> str:
    return _build_prompt(
        config=config,
        base_lines=CANDIDATE_BASE_LINES,
        output_lines=CANDIDATE_OUTPUT_LINES,
        override_key="candidate_system_prompt",
    )


def build_optimize_system_prompt(config: dict[str, Any]) -> str:
    return _build_prompt(
        config=config,
        base_lines=OPTIMIZE_BASE_LINES,
        output_lines=OPTIMIZE_OUTPUT_LINES,
        override_key="optimize_system_prompt",
    )


def build_execution_system_prompt(config: dict[str, Any]) -> str:
    return _build_prompt(
        config=config,
        base_lines=EXECUTION_BASE_LINES,
        output_lines=EXECUTION_OUTPUT_LINES,
        override_key="execution_system_prompt",
    )


def get_prompt_templates() -> dict[str, str]:
    """Strategy instructions only (no OUTPUT schema); the output format belongs to the code."""
    return {
        "candidate": "\n".join(CANDIDATE_BASE_LINES),
        "optimize": "\n".join(OPTIMIZE_BASE_LINES),
        "execution": "\n".join(EXECUTION_BASE_LINES),
    }


def format_user_payload(payload: dict[str, Any]) -> str:
    """User message body: compact JSON the model can quote back."""
    return json.dumps(payload, default=str, sort_keys=True)
