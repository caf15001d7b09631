class PSFMError(Exception):
    """训练核心抛出的所有错误的基类"""


class MissingEmbeddingRowError(PSFMError, KeyError):
    """样本引用的特征在本地嵌入矩阵中没有对应的行"""

    def __init__(self, feature_id: int):
        super().__init__(feature_id)
        self.feature_id = feature_id

    def __str__(self):
        return f"特征 {self.feature_id} 不在活跃行集合中，嵌入行缺失"


class InvalidLearnTypeError(PSFMError, ValueError):
    """学习类型既不是分类也不是回归"""


class ParameterStoreError(PSFMError, RuntimeError):
    """参数服务器 pull / push / barrier 失败"""


class DataBlockExhaustedError(PSFMError, IndexError):
    """读取位置超出数据块末尾"""
