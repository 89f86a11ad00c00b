from pulsemap.domain.pulse import ChangeEvent, GeoPoint, Pulse, PulseDraft
from pulsemap.domain.enums import ChangeOp, PulseCategory, VoteOutcome

__all__ = ["ChangeEvent", "GeoPoint", "Pulse", "PulseDraft", "ChangeOp", "PulseCategory", "VoteOutcome"]
