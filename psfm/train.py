import time
from pathlib import Path
from typing import Optional, Sequence

import matplotlib.pyplot as plt
import pandas as pd
import torch
from loguru import logger
from tqdm import tqdm

from config import FMConfig
from psfm.data.dataset import DataBlock
from psfm.layers.fm import FactorizationMachine
from psfm.layers.gradient import SGDUpdater
from psfm.models.fm_model import FMModel
from psfm.ps.context import TaskContext
from psfm.ps.store import ParameterStore
from psfm.utils.vectors import RowTable, clone_rows, rows_delta


class TrainMetrics:
    """训练过程中的损失收集和绘图工具，每轮接收一个损失值"""

    def __init__(self, losses: Optional[list[float]] = None, sizes: Optional[list[int]] = None):
        self.losses = losses or []
        self.sizes = sizes or []

    def add_loss(self, loss: float, n_samples: int) -> None:
        """
        :param loss: 本轮平方误差之和
        :param n_samples: 参与评估的样本数
        """
        self.losses.append(loss)
        self.sizes.append(n_samples)

    @property
    def mean_losses(self) -> list[float]:
        return [loss / n if n else 0.0 for loss, n in zip(self.losses, self.sizes)]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "epoch": range(1, len(self.losses) + 1),
                "loss": self.losses,
                "mean_loss": self.mean_losses,
            }
        )

    def draw(self, save_path: Optional[str | Path] = None, show: bool = False):
        """绘制每轮平均损失曲线"""
        if not self.losses:
            logger.warning("没有可绘制的指标数据")
            return

        epochs = range(1, len(self.losses) + 1)
        fig = plt.figure(figsize=(6, 5))
        plt.plot(epochs, self.mean_losses, marker="o")
        plt.xlabel("Epoch")
        plt.ylabel("Mean Loss")
        plt.title("Train Loss Curve")
        plt.grid(True)
        plt.tight_layout()

        if save_path:
            save_path = Path(save_path)
            save_path.parent.mkdir(parents=True, exist_ok=True)
            plt.savefig(save_path, dpi=300)
            logger.info(f"指标图已保存至: {save_path}")

        if show:
            plt.show()
        plt.close(fig)


class FMLearner:
    """
    基于参数服务器的 FM 学习器，每个 worker 持有一个实例
    每轮流程：拉取参数 -> 本地副本上逐条 SGD -> 推送增量 -> 评估 -> 同步
    """

    def __init__(
        self,
        ctx: TaskContext,
        store: ParameterStore,
        conf: FMConfig,
        fea_used: Sequence[int],
        metrics: Optional[TrainMetrics] = None,
    ) -> None:
        """
        :param ctx: 执行上下文，提供轮数计数与 worker 编号
        :param store: 共享参数服务器
        :param conf: 超参数配置
        :param fea_used: 特征使用标记，非零表示本 worker 的数据中出现过该特征
        :param metrics: 每轮损失的接收者
        """
        conf.validate()
        self.ctx = ctx
        self.conf = conf
        self.fm_model = FMModel(store, conf.feature_num, conf.rank)
        self.predictor = FactorizationMachine(conf.min_p, conf.max_p)
        self.updater = SGDUpdater(
            conf.rank, conf.lr, conf.reg0, conf.reg1, conf.reg2, conf.learn_type
        )
        self.metrics = metrics if metrics is not None else TrainMetrics()
        # 活跃行集合在构造后不再变化
        self._v_indexes = tuple(j for j, used in enumerate(fea_used) if used != 0)
        logger.info(f"worker {ctx.task_index} 活跃嵌入行数: {len(self._v_indexes)}")

    @property
    def v_indexes(self) -> tuple[int, ...]:
        return self._v_indexes

    def train(self, train_data: DataBlock) -> FMModel:
        """
        训练 FM 模型
        :param train_data: 本 worker 的训练数据
        :return: 参数存放在参数服务器中的模型
        """
        conf = self.conf
        start = time.perf_counter()
        logger.info(
            f"learnType={self.updater.learn_type.value}, feaNum={conf.feature_num}, "
            f"rank={conf.rank}, #trainData={train_data.size()}"
        )
        logger.info(
            f"reg0={conf.reg0}, reg1={conf.reg1}, reg2={conf.reg2}, "
            f"lr={conf.lr}, vStddev={conf.v_stddev}"
        )

        before_init = time.perf_counter()
        self.init_models()
        logger.info(f"初始化参数耗时 {(time.perf_counter() - before_init) * 1000:.0f} ms")

        while self.ctx.get_iteration() < conf.epoch_num:
            start_iter = time.perf_counter()
            w0, w, v = self.one_iteration(train_data)
            iter_cost = time.perf_counter() - start_iter

            start_vali = time.perf_counter()
            loss = self.evaluate(train_data, w0, w, v)
            vali_cost = time.perf_counter() - start_vali

            self.metrics.add_loss(loss, train_data.size())
            mean_loss = loss / train_data.size() if train_data.size() else 0.0
            logger.info(
                f"Epoch {self.ctx.get_iteration() + 1}/{conf.epoch_num} | "
                f"Loss: {mean_loss:.6f} | Train Cost: {iter_cost:.2f} s | "
                f"Valid Cost: {vali_cost:.2f} s"
            )
            self.ctx.inc_iteration()

        logger.info(f"FM 训练完成，总耗时 {time.perf_counter() - start:.2f} s")
        return self.fm_model

    def init_models(self) -> None:
        """编号为 0 的 worker 随机初始化嵌入矩阵，所有 worker 随后同步"""
        if self.ctx.is_initializer:
            generator = None
            if self.conf.seed is not None:
                generator = torch.Generator().manual_seed(self.conf.seed)
            self.fm_model.init_v(self.conf.v_stddev, generator)
        self.fm_model.clock()

    def one_iteration(
        self, data_block: DataBlock
    ) -> tuple[float, torch.Tensor, RowTable]:
        """
        一轮训练：拉取参数，在本地副本上逐条更新，推送增量并同步
        :return: 本轮训练后的本地副本 (w0, w, v)
        """
        start_get = time.perf_counter()
        w0, w, v = self.fm_model.pull_from_ps(self._v_indexes)
        logger.debug(f"拉取参数耗时 {(time.perf_counter() - start_get) * 1000:.0f} ms")

        # 深拷贝得到本地副本，之后独立修改
        _w0 = w0
        _w = w.clone()
        _v = clone_rows(v)
        logger.debug(f"本地副本包含 {len(_v)} 行嵌入")

        touched = set()
        data_block.reset_read_index()
        for _ in tqdm(
            range(data_block.size()),
            desc="Training",
            ncols=100,
            disable=not self.conf.show_progress,
        ):
            data = data_block.read()
            pre = self.predictor.predict(data.x, _w0, _w, _v)
            _w0 = self.updater.update(data.x, data.y, pre, _w0, _w, _v)
            touched.update(data.x.indices.tolist())

        # 只推送被样本更新过的嵌入行
        v_delta = rows_delta(_v, v, sorted(touched))
        self.fm_model.push_to_ps(_w0 - w0, _w - w, v_delta)
        self.fm_model.clock()

        return _w0, _w, _v

    def evaluate(
        self, data_block: DataBlock, w0: float, w: torch.Tensor, v: RowTable
    ) -> float:
        """
        在固定参数下计算平方误差之和，不修改任何参数
        """
        loss = 0.0
        data_block.reset_read_index()
        for _ in range(data_block.size()):
            data = data_block.read()
            pre = self.predictor.predict(data.x, w0, w, v)
            loss += (pre - data.y) ** 2
        return loss
