class InvalidInput(ValueError):
    """Malformed or non-finite view input (center, magnification, length...)."""


class OrbitCancelled(RuntimeError):
    """Reference orbit generation was superseded by a newer view."""


class StaleOrbit(RuntimeError):
    """An orbit was paired with a frame whose reference point it was not computed for."""
