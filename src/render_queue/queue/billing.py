"""Credit debit calculation for completed renders."""

import math
from typing import Any, Dict, Union

from ..models import RenderParameters

MIN_DEBIT = 1


def compute_credit_debit(
    parameters: Union[RenderParameters, Dict[str, Any]],
    credits_per_minute: int = 1,
) -> int:
    """Credits owed for a render: started minutes times the rate, rounded up.

    A render of 61s at 1 credit/minute costs 2. Every completed render costs at
    least ``MIN_DEBIT`` unless the rate is 0.

    Args:
        parameters: Render parameters (duration = durationInFrames / fps)
        credits_per_minute: Billing rate

    Returns:
        Non-negative whole credits
    """
    if credits_per_minute <= 0:
        return 0
    if not isinstance(parameters, RenderParameters):
        parameters = RenderParameters.model_validate(parameters)

    minutes = parameters.duration_s / 60
    # Round first so 120 frames / 30 fps * rate does not become 2.0000000001
    raw = round(minutes * credits_per_minute, 6)
    return max(MIN_DEBIT, math.ceil(raw))
