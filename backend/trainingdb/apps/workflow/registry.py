from __future__ import annotations

from .guards import guard_transition_has_actor

# User module decisions are terminal: nothing leads back to PENDING.
# Re-synchronising a module recreates its user modules instead.
#
# A registration's status is derived from its user modules, so after a
# resync any aggregate can follow from any other.
WORKFLOWS = {
    "user_module": {
        "transitions": {
            "PENDING": {
                "ACCEPTED": [guard_transition_has_actor],
                "REJECTED": [guard_transition_has_actor],
            },
            "ACCEPTED": {},
            "REJECTED": {},
        }
    },
    "registration": {
        "transitions": {
            "PENDING": {
                "ACCEPTED": [guard_transition_has_actor],
                "REJECTED": [guard_transition_has_actor],
            },
            "ACCEPTED": {
                "PENDING": [guard_transition_has_actor],
                "REJECTED": [guard_transition_has_actor],
            },
            "REJECTED": {
                "PENDING": [guard_transition_has_actor],
                "ACCEPTED": [guard_transition_has_actor],
            },
        }
    },
}
