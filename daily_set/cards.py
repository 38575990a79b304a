import itertools
from typing import Any, Dict, NamedTuple


NUMBERS = (1, 2, 3)
SHAPES = ("diamond", "oval", "squiggle")
COLORS = ("red", "green", "purple")
SHADINGS = ("solid", "striped", "empty")

ATTRIBUTES = ("number", "shape", "color", "shading")
DOMAINS = dict(zip(ATTRIBUTES, (NUMBERS, SHAPES, COLORS, SHADINGS)))


class Card(NamedTuple):
    number: int
    shape: str
    color: str
    shading: str


def all_cards() -> list[Card]:
    # number varies slowest, shading fastest; daily boards depend on this order
    return [Card(n, s, c, sh) for n, s, c, sh in itertools.product(NUMBERS, SHAPES, COLORS, SHADINGS)]


def is_set(a, b, c) -> bool:
    # for each property, either all same or all different
    for i in range(4):
        vals = {a[i], b[i], c[i]}
        if len(vals) == 2:
            return False
    return True


def card_to_dict(card: Card) -> Dict[str, Any]:
    return dict(card._asdict())


def card_from_dict(data: Dict[str, Any]) -> Card:
    """Build a Card from its JSON form, rejecting values outside the deck."""
    values = []
    for attr in ATTRIBUTES:
        val = data.get(attr)
        domain = DOMAINS[attr]
        # True == 1 and 1.0 == 1, so the type has to match as well
        if type(val) is not type(domain[0]) or val not in domain:
            raise ValueError(f"invalid {attr}: {val!r}")
        values.append(val)
    return Card(*values)
