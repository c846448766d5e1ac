"""
Route step reshaping.

The aggregator may return fee-collection pseudo-steps next to the real
swap/bridge steps. Those must never be submitted on their own: they are
folded into the first real step's ``includedSteps``. Nested steps typed
``protocol`` are rewritten to ``swap``. This mirrors the current LI.FI route
schema and will need revisiting if that contract changes.
"""

from typing import List

from ..quotes.models import QuoteResponse, QuoteStep
from .models import StepType

FEE_COLLECTION_TOOL = "feeCollection"


def _fix_included_types(step: QuoteStep) -> QuoteStep:
    if not step.included_steps:
        return step.model_copy()
    fixed = [
        s.model_copy(update={"type": "swap"}) if s.type == "protocol" else s
        for s in step.included_steps
    ]
    return step.model_copy(update={"included_steps": fixed})


def reshape_route_steps(steps: List[QuoteStep]) -> List[QuoteStep]:
    fee_steps = [s for s in steps if s.tool == FEE_COLLECTION_TOOL]
    real_steps = [s for s in steps if s.tool != FEE_COLLECTION_TOOL]

    if fee_steps and not real_steps:
        return []
    if not fee_steps:
        return [_fix_included_types(s) for s in real_steps]

    embedded = [s.model_copy(update={"type": "swap"}) for s in fee_steps]
    first, rest = real_steps[0], real_steps[1:]
    first = first.model_copy(update={"included_steps": embedded + list(first.included_steps)})
    return [_fix_included_types(first)] + [_fix_included_types(s) for s in rest]


def route_for_quote(quote: QuoteResponse) -> List[QuoteStep]:
    """Executable steps for a quote.

    The quote's own call data covers every included step, so the quote itself
    becomes the single top-level step, carrying the reshaped included steps.
    """
    included = reshape_route_steps(quote.included_steps) if quote.included_steps else []
    top = quote.as_step().model_copy(update={"included_steps": included})
    return [top]


def step_type(raw_type: str) -> StepType:
    if raw_type == "approval":
        return StepType.APPROVAL
    if raw_type == "cross":
        return StepType.CROSS_CHAIN
    if raw_type == "bridge":
        return StepType.BRIDGE
    return StepType.SWAP
