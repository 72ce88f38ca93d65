"""
Error types raised by the segmentation toolkit.
"""


class CorpusError(OSError):
    """The training corpus could not be read."""


class ModelDecodeError(ValueError):
    """A serialized model blob is corrupt or belongs to another model type."""


class UnknownModelTypeError(KeyError):
    """A model-type tag has no registered model or trainer."""

    def __init__(self, model_type: str, known=()):
        self.model_type = model_type
        self.known = tuple(sorted(known))
        super().__init__(model_type)

    def __str__(self):
        msg = f"unknown model type: {self.model_type!r}"
        if self.known:
            msg += f" (available: {', '.join(self.known)})"
        return msg
