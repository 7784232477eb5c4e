"""Per-turn and cumulative usage accounting for a session."""

from dataclasses import asdict, dataclass, field, fields

from . import fmt

TOKENS_PER_PRICE_UNIT = 1_000_000


@dataclass
class TurnUsage:
    """Usage metadata reported by one completed model response."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    tool_call: bool = False


@dataclass
class SessionMetrics:
    tokens_in: int = 0
    tokens_out: int = 0
    tokens_cached: int = 0
    tool_calls: int = 0
    messages: int = 0
    cost: float = 0.0
    last: TurnUsage | None = field(default=None, compare=False)

    def to_dict(self) -> dict:
        return {
            f.name: getattr(self, f.name) for f in fields(self) if f.name != "last"
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMetrics":
        metrics = cls()
        for f in fields(cls):
            if f.name == "last" or f.name not in data:
                continue
            value = data[f.name]
            if f.name == "cost":
                value = float(value)
            else:
                value = int(value)
            if value < 0:
                raise ValueError(f"metric {f.name!r} must be non-negative")
            setattr(metrics, f.name, value)
        return metrics


def price_for(
    model: str, provider: str | None = None, prices: dict | None = None
) -> tuple[float, float] | None:
    """Return (input, output) price per million tokens, or None if unknown.

    Configured prices win; otherwise litellm's bundled cost table is consulted.
    """
    for key in (model, f"{provider}/{model}" if provider else None):
        if key and prices and key in prices:
            input_price, output_price = prices[key]
            return float(input_price), float(output_price)

    import litellm

    for key in (f"{provider}/{model}" if provider else None, model):
        if not key:
            continue
        info = litellm.model_cost.get(key)
        if info:
            return (
                float(info.get("input_cost_per_token") or 0.0) * TOKENS_PER_PRICE_UNIT,
                float(info.get("output_cost_per_token") or 0.0)
                * TOKENS_PER_PRICE_UNIT,
            )
    return None


def estimate_cost(
    input_tokens: int, output_tokens: int, price: tuple[float, float] | None
) -> float:
    if price is None:
        return 0.0
    input_price, output_price = price
    return (
        input_tokens * input_price + output_tokens * output_price
    ) / TOKENS_PER_PRICE_UNIT


def track(
    metrics: SessionMetrics,
    usage: TurnUsage | None,
    price: tuple[float, float] | None = None,
) -> None:
    """Fold one completed model response into the cumulative counters."""
    if usage is None:
        return
    metrics.messages += 1
    metrics.tokens_in += max(0, int(usage.input_tokens or 0))
    metrics.tokens_out += max(0, int(usage.output_tokens or 0))
    metrics.tokens_cached += max(0, int(usage.cached_tokens or 0))
    if usage.tool_call:
        metrics.tool_calls += 1
    metrics.cost += estimate_cost(
        max(0, int(usage.input_tokens or 0)),
        max(0, int(usage.output_tokens or 0)),
        price,
    )
    metrics.last = usage


def _kilo(n: int) -> str:
    return f"{n / 1000:.1f}K"


def status_line(provider: str, model: str, metrics: SessionMetrics) -> str:
    """One-line summary, e.g. ``gemini/gemini-2.0-flash · 1.2K in · 0.3K out · $0.0012``."""
    return (
        f"{provider}/{model} · {_kilo(metrics.tokens_in)} in · "
        f"{_kilo(metrics.tokens_out)} out · ${metrics.cost:.4f}"
    )


def show_status(session_id: str, provider: str, model: str, metrics: SessionMetrics) -> None:
    rows = [
        ("Messages", str(metrics.messages)),
        ("Tokens In", str(metrics.tokens_in)),
        ("Tokens Out", str(metrics.tokens_out)),
        ("Cache Hits", str(metrics.tokens_cached)),
        ("Tool Calls", str(metrics.tool_calls)),
        ("Est Cost", f"${metrics.cost:.6f}"),
    ]
    if metrics.last is not None:
        last = asdict(metrics.last)
        rows.append(
            (
                "Last Turn",
                f"{last['input_tokens']} in / {last['output_tokens']} out"
                f" / {last['cached_tokens']} cached",
            )
        )
    fmt.status_box(f"Session {session_id}", rows, f"Model: {provider}/{model}")
