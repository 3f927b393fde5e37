"""
perpx Perpetuals Exchange Package

Core imports are lazily loaded so that importing perpx does not pull in the
whole engine.  For direct module access, import from submodules:

    from perpx.exchange import ClearingHouse, Perpetual, Side
    from perpx.config import load_config
    from perpx.exceptions import InvariantViolation
"""

__version__ = "0.1.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'ClearingHouse':
        from .exchange.clearing_house import ClearingHouse
        return ClearingHouse
    elif name == 'ExchangeStateManager':
        from .exchange.state_manager import ExchangeStateManager
        return ExchangeStateManager
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'PerpxException':
        from .exceptions import PerpxException
        return PerpxException
    raise AttributeError(f"module 'perpx' has no attribute {name!r}")

__all__ = ['ClearingHouse', 'ExchangeStateManager', 'load_config', 'PerpxException']
