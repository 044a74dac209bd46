from app.schemas.cases import CaseStateRequest, ResolvePendencyRequest
from app.schemas.outbound import SendMessageRequest, SendMessageResponse
from app.schemas.presence import AdjustPunchRequest, ClockRequest, CloseDayRequest, JustifyRequest

__all__ = [
    "SendMessageRequest",
    "SendMessageResponse",
    "ClockRequest",
    "JustifyRequest",
    "CloseDayRequest",
    "AdjustPunchRequest",
    "CaseStateRequest",
    "ResolvePendencyRequest",
]
