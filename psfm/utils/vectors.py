from typing import Iterable, Optional, Sequence

import torch

from psfm.utils.errors import MissingEmbeddingRowError

# 所有参数与特征值统一使用双精度
DTYPE = torch.float64

RowTable = dict[int, torch.Tensor]


class SparseSortedVector:
    """
    按索引升序存储的稀疏向量，用于表示一条样本的特征
    - indices：非零特征的编号，严格递增
    - values：与 indices 一一对应的特征值
    - dim：向量的总维度，即特征总数
    """

    __slots__ = ("dim", "indices", "values")

    def __init__(
        self,
        dim: int,
        indices: Sequence[int] | torch.Tensor,
        values: Sequence[float] | torch.Tensor,
    ):
        indices = torch.as_tensor(indices, dtype=torch.long).flatten()
        values = torch.as_tensor(values, dtype=DTYPE).flatten()
        if indices.numel() != values.numel():
            raise ValueError(
                f"indices 与 values 长度不一致: {indices.numel()} != {values.numel()}"
            )
        if indices.numel() > 0:
            if indices[0] < 0 or indices[-1] >= dim:
                raise ValueError(f"特征编号超出范围 [0, {dim})")
            # 要求严格递增，同时排除重复编号
            if indices.numel() > 1 and not bool((indices[1:] > indices[:-1]).all()):
                raise ValueError("稀疏向量的索引必须严格递增")
        self.dim = dim
        self.indices = indices
        self.values = values

    @classmethod
    def from_dict(cls, dim: int, features: dict[int, float]) -> "SparseSortedVector":
        """由 {特征编号: 特征值} 构造，自动排序"""
        items = sorted(features.items())
        return cls(dim, [k for k, _ in items], [v for _, v in items])

    def size(self) -> int:
        return self.indices.numel()

    def __len__(self):
        return self.size()

    def __iter__(self):
        return zip(self.indices.tolist(), self.values.tolist())

    def __repr__(self):
        pairs = ", ".join(f"{i}:{v:g}" for i, v in self)
        return f"SparseSortedVector(dim={self.dim}, {{{pairs}}})"

    def dot(self, dense: torch.Tensor) -> float:
        return dot(self, dense)


def dense(values: Iterable[float] | int) -> torch.Tensor:
    """构造稠密向量，传入整数时返回该长度的零向量"""
    if isinstance(values, int):
        return torch.zeros(values, dtype=DTYPE)
    return torch.as_tensor(list(values), dtype=DTYPE)


def dot(x: SparseSortedVector, w: torch.Tensor) -> float:
    """稀疏向量与稠密向量的内积"""
    if x.size() == 0:
        return 0.0
    return torch.dot(x.values, w[x.indices]).item()


def plus_by(w: torch.Tensor, x: SparseSortedVector, alpha: float) -> torch.Tensor:
    """
    原地执行 w += alpha * x，只修改 x 中出现的下标
    :return: w 本身，便于链式调用
    """
    if x.size() > 0:
        w.index_add_(0, x.indices, x.values * alpha)
    return w


def times_by(w: torch.Tensor, factor: float) -> torch.Tensor:
    """原地缩放整个向量"""
    return w.mul_(factor)


def gather_rows(rows: RowTable, indices: Iterable[int]) -> torch.Tensor:
    """
    按特征编号取出嵌入行并堆叠
    :param rows: 特征编号到嵌入行的映射
    :param indices: 特征编号
    :return: (nnz, rank) 矩阵
    """
    stacked = []
    for j in indices:
        row = rows.get(j)
        if row is None:
            raise MissingEmbeddingRowError(j)
        stacked.append(row)
    return torch.stack(stacked)


def clone_rows(rows: RowTable) -> RowTable:
    """深拷贝行表，拷贝后可独立修改"""
    return {j: row.clone() for j, row in rows.items()}


def rows_delta(
    updated: RowTable, snapshot: RowTable, row_ids: Optional[Iterable[int]] = None
) -> RowTable:
    """
    计算每一行的增量 updated - snapshot
    :param row_ids: 只计算这些行，默认为 updated 中的全部行
    """
    if row_ids is None:
        row_ids = updated.keys()
    return {j: updated[j] - snapshot[j] for j in row_ids}
