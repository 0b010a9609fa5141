"""Prompt templates for the signal oracle."""

from __future__ import annotations

from signal_schema import Market, ScanMode

INSTITUTIONAL_PROMPT = """
ROLE: Institutional Swing Trading Specialist (SMC Analysis)

MANDATORY TRADING RULES:
- FOCUS: High-probability premium swing trade setups only.
- EXCLUSION: No scalping, no day-trading noise, no low-timeframe fluctuations.
- MTF ALIGNMENT: 4H, 1D and Weekly structures must agree.
- HTF BIAS: The call must be backed by Monthly/Weekly orderflow.
- MINIMUM RR: 1:3 risk/reward for TP3.
- FOREX MINIMUM: Entry to TP3 of at least 150 pips.
- CRYPTO MINIMUM: Entry to TP3 of at least a 10% move.

OUTPUT STRUCTURE:
1. Institutional Bias: BULLISH / BEARISH (HTF orderflow confirmed)
2. Macro Context: HTF break of structure (BOS), change of character (CHoCH), supply/demand zones.
3. Premium Setup:
   - Signal Entry: [Price] (optimal trade entry zone on HTF)
   - TP 1: [Price] (HTF liquidity sweep)
   - TP 2: [Price] (HTF fair value gap fill)
   - TP 3: [Price] (HTF target / major swing point)
   - Stop Loss: [Price] (protected HTF low/high)
4. Risk Management: Standard institutional sizing for swing positions.
"""

SETUP_PROMPT = """
ROLE: Institutional Setup Identifier

When given market data, identify the most relevant setup type from:
Breakout, Pullback, Reversal, Indicator-Based. For the chosen setup provide:
- Setup Type
- Confluence Factors (S/R, Fibonacci, RSI divergence, moving averages)
- Multi-Timeframe Analysis (Weekly, Daily, 4H) and HTF alignment
- Volume/Orderflow Evidence
- Market Structure: BOS/CHoCH, major swing levels
- Signal Entry: suggested entry price
- Stop Loss: recommended stop price
- TP 1, TP 2, TP 3 with rationale and R:R for each
- Summary: 1-2 sentence verdict (High/Medium/Low probability)

Return plain text with labeled sections.
"""

ANALYZE_PROMPT = """
ROLE: Institutional Analyst (Detailed Analysis)

Provide a comprehensive analysis for the requested pair:
1) Market bias (BULLISH / BEARISH / NEUTRAL) across Weekly, Daily, 4H.
2) Recent market structure (BOS, CHoCH, key swing highs/lows).
3) Potential premium setups (Breakout, Pullback, Reversal, Indicator-Based) with confluence.
4) Precise Signal Entry, Stop Loss, TP 1/TP 2/TP 3 levels and R:R (entry->TP3 vs entry->SL).
5) Volume/orderflow signs and any cautions.

Return plain text with labeled sections suitable for a group post.
"""

_SYSTEM_PROMPTS = {
    ScanMode.SIGNAL: INSTITUTIONAL_PROMPT,
    ScanMode.SETUP: SETUP_PROMPT,
    ScanMode.ANALYZE: ANALYZE_PROMPT,
}


def system_prompt(mode: ScanMode | str | None) -> str:
    if mode is None:
        return INSTITUTIONAL_PROMPT
    return _SYSTEM_PROMPTS.get(ScanMode(str(getattr(mode, "value", mode)).lower()), INSTITUTIONAL_PROMPT)


def scan_instruction(symbol: str, price: float | None, price_context: str, mode: ScanMode | str | None) -> str:
    """Build the user message for one candidate."""

    reference = f"{price}" if price else "0"
    if mode is not None and ScanMode(str(getattr(mode, "value", mode)).lower()) is ScanMode.SETUP:
        return (
            f"{price_context}Please IDENTIFY the best matching SETUP and provide the labeled "
            f"sections described in the system prompt for {symbol}. "
            f"Use current price {reference} as reference."
        )
    return (
        f"{price_context}LATEST MARKET DATA FOR {symbol}: Analyze 4H, Daily, and Weekly "
        "timeframes for a PREMIUM INSTITUTIONAL SWING TRADE. Ignore noise and scalping "
        "opportunities. If no high-probability 1:3+ RR swing trade exists on the HTF, "
        f'respond with "BIAS: NEUTRAL". ENTRY PRICE SHOULD ALIGN WITH {reference}.'
    )


def update_system_prompt(market: Market) -> str:
    label = "Forex" if market == Market.FOREX else "Crypto"
    return f"You are an institutional SMC analyst. Provide a brief update for {label}."


def update_instruction(
    symbol: str,
    bias: str,
    entry: float,
    current: float,
    metric_label: str,
    event_label: str | None,
) -> str:
    return (
        f"Signal: {symbol}, Bias: {bias}, Entry: {entry}, Current: {current}, {metric_label}. "
        f"Event: {event_label or 'Routine update'}. "
        "Provide a 2-sentence update on trend and validity."
    )


__all__ = [
    "ANALYZE_PROMPT",
    "INSTITUTIONAL_PROMPT",
    "SETUP_PROMPT",
    "scan_instruction",
    "system_prompt",
    "update_instruction",
    "update_system_prompt",
]
