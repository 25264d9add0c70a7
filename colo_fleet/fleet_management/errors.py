class ParseError(ValueError):
    """Malformed inventory record.

    The whole inventory is suspect when a single record can't be parsed, so loading is aborted.
    """

    def __init__(self, msg: str, *, source: str = "", lineno: int = 0) -> None:
        self.source = source
        self.lineno = lineno
        location = f"{source}:{lineno}: " if lineno else f"{source}: " if source else ""
        super().__init__(f"{location}{msg}")


class IdentityError(RuntimeError):
    """No node reported the identity of the caller."""
