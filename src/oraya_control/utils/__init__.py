from oraya_control.utils.datetime import isoformat_or_none, to_utc, utc_now

__all__ = ["isoformat_or_none", "to_utc", "utc_now"]
