from . import costs, health

__all__ = ["costs", "health"]
