from __future__ import annotations

import uuid


def new_id() -> str:
    """Primary keys for aggregate roots are UUID strings."""
    return str(uuid.uuid4())
