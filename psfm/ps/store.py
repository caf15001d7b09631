import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import torch
from loguru import logger

from psfm.utils.errors import ParameterStoreError
from psfm.utils.vectors import DTYPE, RowTable

Snapshot = tuple[float, torch.Tensor, RowTable]


class ParameterStore(ABC):
    """
    按行划分的共享参数存储，worker 只通过 pull / push / barrier 与之交互
    """

    @abstractmethod
    def pull(self, row_ids: Iterable[int]) -> Snapshot:
        """
        拉取参数快照
        :param row_ids: 需要的嵌入行编号
        :return: (w0, w, {行编号: 嵌入行})，返回值可被调用方自由修改
        """

    @abstractmethod
    def push(self, w0_delta: float, w_delta: torch.Tensor, v_delta: RowTable) -> None:
        """以增量方式更新参数"""

    @abstractmethod
    def barrier(self) -> None:
        """阻塞直到所有 worker 都到达本轮同步点"""


class InMemoryParameterStore(ParameterStore):
    """
    单进程内的参数存储，多个 worker 线程共享同一个实例
    - push 在锁内累加，多个 worker 的增量可按任意顺序合并
    - barrier 基于 threading.Barrier，参与方数量为 workers
    """

    def __init__(
        self,
        feature_num: int,
        rank: int,
        workers: int = 1,
        barrier_timeout: Optional[float] = None,
    ):
        self.feature_num = feature_num
        self.rank = rank
        self.w0 = 0.0
        self.w = torch.zeros(feature_num, dtype=DTYPE)
        self.v = torch.zeros(feature_num, rank, dtype=DTYPE)
        # 已完成的同步轮数
        self.version = 0
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(
            workers, action=self._advance_version, timeout=barrier_timeout
        )

    def _advance_version(self):
        self.version += 1

    def _check_row(self, row_id: int) -> None:
        if not 0 <= row_id < self.feature_num:
            raise ParameterStoreError(
                f"行编号 {row_id} 超出范围 [0, {self.feature_num})"
            )

    def pull(self, row_ids: Iterable[int]) -> Snapshot:
        row_ids = list(row_ids)
        for j in row_ids:
            self._check_row(j)
        with self._lock:
            w0 = self.w0
            w = self.w.clone()
            v = {j: self.v[j].clone() for j in row_ids}
        return w0, w, v

    def push(self, w0_delta: float, w_delta: torch.Tensor, v_delta: RowTable) -> None:
        if w_delta.shape != self.w.shape:
            raise ParameterStoreError(
                f"一阶权重增量维度不匹配: {tuple(w_delta.shape)} != {tuple(self.w.shape)}"
            )
        for j, row in v_delta.items():
            self._check_row(j)
            if row.shape != (self.rank,):
                raise ParameterStoreError(
                    f"嵌入行 {j} 的增量维度不匹配: {tuple(row.shape)} != ({self.rank},)"
                )
        with self._lock:
            self.w0 += w0_delta
            self.w += w_delta
            for j, row in v_delta.items():
                self.v[j] += row

    def barrier(self) -> None:
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError as e:
            logger.error("参数同步屏障已失效，可能有 worker 超时或异常退出")
            raise ParameterStoreError("barrier 等待失败") from e

    def abort(self) -> None:
        """使屏障失效，唤醒所有等待中的 worker"""
        self._barrier.abort()
