from . import units

__all__ = ["units"]
