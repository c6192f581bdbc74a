"""
LatticeStrain 异常类型

分析流程中的错误分为三类：配置错误与结构错误在处理开始前即失败；
取消运行在原子循环的检查点上抛出。单原子拟合失败与键不一致只在结果中计数，
不会以异常形式出现。
"""


class LatticeStrainError(Exception):
    """LatticeStrain 所有异常的基类。"""


class ConfigurationError(LatticeStrainError, ValueError):
    """配置非法：未知晶格族、非正晶格常数或轴比、容差越界等。"""


class StructureError(LatticeStrainError, ValueError):
    """输入结构非法：原子数为零、数组形状不匹配、晶胞缺失或退化。"""


class AnalysisCancelledError(LatticeStrainError, RuntimeError):
    """分析在检查点被取消，不返回任何可用结果。"""
