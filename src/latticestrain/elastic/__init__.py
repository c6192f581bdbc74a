"""
弹性应变模块 - 团簇图、形变梯度拟合、应变推导与分析服务
"""

__all__ = [
    "StructureIdentification",
    "identify_structures",
    "ClusterGraph",
    "ClusterGraphBuilder",
    "DeformationFitEngine",
    "FitStatus",
    "StrainCalculator",
    "StrainFrame",
    "Deformer",
    "ElasticStrainEngine",
    "ElasticStrainResult",
    "ElasticStrainService",
]

_LOCATIONS = {
    "StructureIdentification": "identification",
    "identify_structures": "identification",
    "ClusterGraph": "clusters",
    "ClusterGraphBuilder": "clusters",
    "DeformationFitEngine": "fitting",
    "FitStatus": "fitting",
    "StrainCalculator": "mechanics",
    "StrainFrame": "mechanics",
    "Deformer": "deformation",
    "ElasticStrainEngine": "engine",
    "ElasticStrainResult": "engine",
    "ElasticStrainService": "service",
}


# 延迟导入避免循环依赖
def __getattr__(name):
    if name in _LOCATIONS:
        import importlib

        module = importlib.import_module(f".{_LOCATIONS[name]}", __name__)
        return getattr(module, name)
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
