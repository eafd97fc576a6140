"""Travel requests: lifecycle, per-user caps and expiry."""

from tripcomposer.modules.requests.models import CapsInfo, CreateRequestInput, TravelRequest
from tripcomposer.modules.requests.service import RequestService
from tripcomposer.modules.requests.state_machine import RequestState

__all__ = ["CapsInfo", "CreateRequestInput", "RequestService", "RequestState", "TravelRequest"]
