"""
可视化模块 - 弹性应变结果图
"""

__all__ = ["plot_volumetric_strain_histogram", "plot_fit_status"]


# 延迟导入，避免未绘图时加载 matplotlib
def __getattr__(name):
    if name in __all__:
        from . import strain_plots

        return getattr(strain_plots, name)
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
