from __future__ import annotations

from typing import List, Sequence, Set

from press3.errors import ValidationError
from press3.util.ids import validate_address


def _key(addr: str) -> str:
    v = validate_address(addr)
    return v.value if v.ok else str(addr)


def validate_editor_changes(add: Sequence[str] = (), remove: Sequence[str] = ()) -> None:
    """Raise ValidationError on the first malformed address, `add` first."""
    for which, addresses in (("add", add), ("remove", remove)):
        for a in addresses:
            if not validate_address(a).ok:
                raise ValidationError(reason=f"invalid_address_in_{which}", details=a)


def mutate_editors(current: Sequence[str], add: Sequence[str] = (), remove: Sequence[str] = ()) -> List[str]:
    """Compute a page's new editor list.

    Every entry of `add` and `remove` is validated before anything else; the
    first malformed one raises ValidationError naming it and `current` is left
    alone. The result is `current` minus `remove` (anything else in `current`,
    repeats included, is kept as is), followed by the `add` entries not
    already present, in `add` order.

    Addresses compare by normalized form ("0xA" == "0x0...0a") but keep the
    spelling they were given in.
    """
    validate_editor_changes(add, remove)

    removed: Set[str] = {_key(a) for a in remove}

    out: List[str] = []
    present: Set[str] = set()
    for a in current:
        k = _key(a)
        if k in removed:
            continue
        present.add(k)
        out.append(a)

    for a in add:
        k = _key(a)
        if k in present:
            continue
        present.add(k)
        out.append(a.strip())
    return out
