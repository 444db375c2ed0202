def one_liner(s: str, cut_len: int | None = None) -> str:
    """Collapse newlines and repeated spaces, optionally cutting to ``cut_len``."""
    s = " ".join(s.split())
    return s[:cut_len] if cut_len else s


def elapsed_ms(started: float, finished: float) -> int:
    return round((finished - started) * 1000)
