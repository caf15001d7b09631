import math

import torch

from psfm.utils.vectors import RowTable, SparseSortedVector, dot, gather_rows


class FactorizationMachine:
    """
    因子分解机 (FM) 的预测部分，参数由调用方传入，本身不持有参数。
    公式：
        y = w_0 + sum(w_i * x_i) + sum(<v_i, v_j> * x_i * x_j)
    其中：
        - w_0：全局偏置
        - w_i：每个特征的一阶权重
        - x_i：稀疏样本中第 i 个非零特征的取值
        - v_i：每个特征的嵌入向量，维度为 rank
    实现说明：
        - 二阶项采用 0.5 * (sum(xv) ** 2 - sum(xv ** 2)) 的恒等式，
          复杂度为 O(rank * nnz)，无需两两枚举。
        - 预测结果被截断到 [min_p, max_p]，训练与评估共用同一组边界。
    """

    def __init__(self, min_p: float = -math.inf, max_p: float = math.inf):
        if min_p > max_p:
            raise ValueError(f"截断边界无效: min_p={min_p} > max_p={max_p}")
        self.min_p = min_p
        self.max_p = max_p

    def stack_embeds(self, x: SparseSortedVector, v: RowTable) -> torch.Tensor:
        """
        取出样本中各特征的嵌入行，并乘以特征值
        :return: (nnz, rank) 的 x_i * v_i 矩阵
        """
        rows = gather_rows(v, x.indices.tolist())
        return x.values.unsqueeze(1) * rows

    def interaction(self, x: SparseSortedVector, v: RowTable) -> float:
        """二阶交叉项，样本只有一个非零特征时恰好为 0"""
        if x.size() == 0:
            return 0.0
        xv = self.stack_embeds(x, v)
        # 0.5 * (sum(xv) **2 - sum(xv **2))
        sum_square = xv.sum(dim=0) ** 2
        square_sum = (xv**2).sum(dim=0)
        return 0.5 * (sum_square - square_sum).sum().item()

    def clip(self, score: float) -> float:
        score = score if score < self.max_p else self.max_p
        score = score if score > self.min_p else self.min_p
        return score

    def predict(
        self, x: SparseSortedVector, w0: float, w: torch.Tensor, v: RowTable
    ) -> float:
        """
        计算单条样本的 FM 预测值
        :param x: 稀疏样本
        :param w0: 偏置
        :param w: 一阶权重，长度为特征总数
        :param v: 特征编号到嵌入行的映射，必须覆盖 x 中的全部特征
        :return: 截断后的预测值
        """
        score = w0 + dot(x, w) + self.interaction(x, v)
        return self.clip(score)
