from enum import Enum

import torch

from psfm.utils.errors import InvalidLearnTypeError
from psfm.utils.vectors import (
    DTYPE,
    RowTable,
    SparseSortedVector,
    gather_rows,
    plus_by,
    times_by,
)


class LearnType(Enum):
    """
    学习类型，决定损失函数对预测值的导数乘子 dm
    - 分类：loss = -ln(sigmoid(pre * y))
    - 回归：loss = (pre - y)^2，常数 2 并入学习率
    """

    CLASSIFICATION = "c"
    REGRESSION = "r"

    @classmethod
    def parse(cls, value) -> "LearnType":
        if isinstance(value, cls):
            return value
        aliases = {
            "c": cls.CLASSIFICATION,
            "classification": cls.CLASSIFICATION,
            "r": cls.REGRESSION,
            "regression": cls.REGRESSION,
        }
        key = value.strip().lower() if isinstance(value, str) else value
        if key not in aliases:
            raise InvalidLearnTypeError(f"不支持的学习类型: {value!r}，可选 c / r")
        return aliases[key]

    def derivation_multiplier(self, y: float, pre: float) -> float:
        """
        d(loss)/d(theta) = dm * d(pre)/d(theta)
        :param y: 样本标签
        :param pre: 预测值
        """
        if self is LearnType.CLASSIFICATION:
            # -y * (1 - 1 / (1 + exp(-y * pre))) 的数值稳定写法
            return -y * torch.sigmoid(torch.tensor(-y * pre, dtype=DTYPE)).item()
        return pre - y


class SGDUpdater:
    """
    单条样本的随机梯度下降更新器，原地修改本地副本中的一阶权重与嵌入行
    """

    def __init__(
        self,
        rank: int,
        lr: float,
        reg0: float = 0.0,
        reg1: float = 0.0,
        reg2: float = 0.0,
        learn_type: LearnType | str = LearnType.REGRESSION,
    ):
        """
        :param rank: 嵌入向量维度
        :param lr: 学习率
        :param reg0: 偏置的 L2 正则系数
        :param reg1: 一阶权重的 L2 正则系数
        :param reg2: 嵌入矩阵的 L2 正则系数
        :param learn_type: 学习类型，构造时即校验
        """
        self.rank = rank
        self.lr = lr
        self.reg0 = reg0
        self.reg1 = reg1
        self.reg2 = reg2
        self.learn_type = LearnType.parse(learn_type)

    def derivation_multiplier(self, y: float, pre: float) -> float:
        return self.learn_type.derivation_multiplier(y, pre)

    def update_w0(self, w0: float, dm: float) -> float:
        return w0 - self.lr * (dm + self.reg0 * w0)

    def update_w(self, x: SparseSortedVector, dm: float, w: torch.Tensor) -> None:
        # 先对整个向量做权重衰减，再做稀疏梯度步
        times_by(w, 1 - self.lr * self.reg1)
        plus_by(w, x, -self.lr * dm)

    def update_v(self, x: SparseSortedVector, dm: float, v: RowTable) -> None:
        """
        更新样本涉及的嵌入行
        grad_{j,f} = x_j * sum_i(v_{i,f} * x_i) - v_{j,f} * x_j^2
        同一条样本内所有行的更新基于更新前的取值，互不影响
        """
        if x.size() == 0:
            return
        ids = x.indices.tolist()
        rows = gather_rows(v, ids)
        xs = x.values.unsqueeze(1)
        # dot_f = sum_i x_i * v_{i,f}, (rank,)
        dots = (xs * rows).sum(dim=0)
        # (nnz, rank)
        grads = dots.unsqueeze(0) * xs - rows * xs**2
        steps = self.lr * (dm * grads + self.reg2 * rows)
        for k, j in enumerate(ids):
            v[j].sub_(steps[k])

    def update(
        self,
        x: SparseSortedVector,
        y: float,
        pre: float,
        w0: float,
        w: torch.Tensor,
        v: RowTable,
    ) -> float:
        """
        对一条样本执行完整的 SGD 更新
        :param pre: 当前参数下的预测值
        :return: 更新后的偏置，w 与 v 原地修改
        """
        dm = self.derivation_multiplier(y, pre)
        w0 = self.update_w0(w0, dm)
        self.update_w(x, dm, w)
        self.update_v(x, dm, v)
        return w0
