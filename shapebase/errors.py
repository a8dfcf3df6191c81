"""
Errors raised by the shapebase core and stores.

All of them are ValueError subclasses: they signal bad input from the caller,
never a transient failure worth retrying. `status` is the HTTP status the API
answers with.
"""


class ShapebaseError(ValueError):
    status: int = 400


class MalformedVectorError(ShapebaseError):
    """A taste vector value is not a finite number."""


class CrossSpaceError(ShapebaseError):
    """Two taste vectors from different spaces were compared."""


class PredictionStateError(ShapebaseError):
    """A prediction lifecycle transition is not allowed in its current state."""

    status = 409


class NotFoundError(ShapebaseError):
    status = 404
