from pathlib import Path
from typing import Iterator, NamedTuple, Optional

import numpy as np
from loguru import logger
from sklearn.datasets import load_svmlight_file

from psfm.utils.errors import DataBlockExhaustedError
from psfm.utils.vectors import SparseSortedVector


class LabeledData(NamedTuple):
    """一条带标签的稀疏样本"""

    x: SparseSortedVector
    y: float


class DataBlock:
    """
    顺序读取的样本块，训练与评估都通过游标逐条读取
    - reset_read_index：游标归零，从头重新读取
    - read：读取当前样本并前移游标，越界时抛出异常
    """

    def __init__(self, samples: Optional[list[LabeledData]] = None):
        self.samples: list[LabeledData] = list(samples or [])
        self.read_index = 0

    def put(self, sample: LabeledData) -> None:
        self.samples.append(sample)

    def size(self) -> int:
        return len(self.samples)

    def __len__(self):
        return self.size()

    def reset_read_index(self) -> None:
        self.read_index = 0

    def read(self) -> LabeledData:
        if self.read_index >= len(self.samples):
            raise DataBlockExhaustedError(
                f"读取位置 {self.read_index} 超出数据块大小 {len(self.samples)}"
            )
        sample = self.samples[self.read_index]
        self.read_index += 1
        return sample

    def __iter__(self) -> Iterator[LabeledData]:
        """从头完整读取一遍"""
        self.reset_read_index()
        for _ in range(self.size()):
            yield self.read()

    def feature_used(self, feature_num: int) -> np.ndarray:
        """
        统计每个特征在本数据块中出现的次数
        :return: 长度为 feature_num 的计数数组，非零即为活跃特征
        """
        used = np.zeros(feature_num, dtype=np.int64)
        for sample in self.samples:
            np.add.at(used, sample.x.indices.numpy(), 1)
        return used

    def label_range(self) -> tuple[float, float]:
        """标签的最小值与最大值，常用作预测截断边界"""
        if not self.samples:
            raise ValueError("空数据块没有标签范围")
        labels = [sample.y for sample in self.samples]
        return min(labels), max(labels)

    def split(self, n_parts: int) -> list["DataBlock"]:
        """按轮询方式切分为 n_parts 份，用于多个 worker 各自训练一份"""
        if n_parts <= 0:
            raise ValueError(f"切分份数必须为正数: {n_parts}")
        return [DataBlock(self.samples[i::n_parts]) for i in range(n_parts)]

    @classmethod
    def from_svmlight(
        cls, path: str | Path, feature_num: Optional[int] = None
    ) -> "DataBlock":
        """
        读取 libsvm 格式的数据文件
        :param path: 文件路径，每行形如 `label idx:value idx:value ...`
        :param feature_num: 特征总数，为空时根据文件中最大特征编号推断
        :return: 数据块
        """
        logger.info(f"读取 libsvm 数据: {path}")
        # zero_based=True 保证特征编号与文件中一致，不做 1-based 平移
        X, y = load_svmlight_file(str(path), n_features=feature_num, zero_based=True)
        X = X.tocsr()
        # 保证每行的特征编号有序
        X.sum_duplicates()
        dim = X.shape[1]
        block = cls()
        for row in range(X.shape[0]):
            start, end = X.indptr[row], X.indptr[row + 1]
            x = SparseSortedVector(dim, X.indices[start:end], X.data[start:end])
            block.put(LabeledData(x, float(y[row])))
        logger.info(f"共读取 {block.size()} 条样本, 特征维度 {dim}")
        return block
