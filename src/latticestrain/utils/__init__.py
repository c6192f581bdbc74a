"""
工具模块
"""

__all__ = [
    "TensorConverter", "setup_logging", "map_chunks",
    "LatticeStrainError", "ConfigurationError", "StructureError",
    "AnalysisCancelledError",
]

# 延迟导入避免循环依赖
def __getattr__(name):
    if name in ("TensorConverter", "setup_logging", "map_chunks"):
        from . import utils
        return getattr(utils, name)
    elif name in (
        "LatticeStrainError",
        "ConfigurationError",
        "StructureError",
        "AnalysisCancelledError",
    ):
        from . import exceptions
        return getattr(exceptions, name)
    else:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
