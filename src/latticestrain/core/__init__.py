"""
核心模块 - 晶胞、参考晶格、晶体生成与配置管理
"""

__all__ = [
    "SimulationCell",
    "LatticeFamily",
    "ReferenceLattice",
    "build_reference_lattice",
    "CrystallineStructureBuilder",
    "ConfigManager",
    "ElasticStrainConfig",
]


# 延迟导入避免循环依赖
def __getattr__(name):
    if name == "SimulationCell":
        from .structure import SimulationCell
        return SimulationCell
    elif name in ("LatticeFamily", "ReferenceLattice", "build_reference_lattice"):
        from . import lattice
        return getattr(lattice, name)
    elif name == "CrystallineStructureBuilder":
        from .crystalline_structures import CrystallineStructureBuilder
        return CrystallineStructureBuilder
    elif name in ("ConfigManager", "ElasticStrainConfig"):
        from . import config
        return getattr(config, name)
    else:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
