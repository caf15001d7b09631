from pathlib import Path
from typing import Iterable, Optional

import pandas as pd
import torch
from loguru import logger

from psfm.data.dataset import DataBlock
from psfm.layers.fm import FactorizationMachine
from psfm.ps.store import ParameterStore, Snapshot
from psfm.utils.vectors import DTYPE, RowTable


class FMModel:
    """
    FM 模型句柄，参数存放在共享的参数服务器中
    - w0：偏置
    - w：一阶权重，长度为 feature_num
    - v：嵌入矩阵，每个特征一行，维度为 rank
    """

    def __init__(self, store: ParameterStore, feature_num: int, rank: int):
        self.store = store
        self.feature_num = feature_num
        self.rank = rank

    def pull_from_ps(self, row_ids: Iterable[int]) -> Snapshot:
        """拉取 w0, w 以及指定的嵌入行"""
        return self.store.pull(row_ids)

    def push_to_ps(self, w0_delta: float, w_delta: torch.Tensor, v_delta: RowTable):
        """将本轮的参数增量推送到参数服务器"""
        self.store.push(w0_delta, w_delta, v_delta)

    def clock(self) -> None:
        """跨过同步屏障"""
        self.store.barrier()

    def init_v(self, v_stddev: float, generator: Optional[torch.Generator] = None):
        """
        以 N(0, v_stddev^2) 随机初始化全部嵌入行
        通过 push(新值 - 当前值) 实现赋值，只应由一个 worker 调用
        """
        row_ids = range(self.feature_num)
        _, w, current = self.pull_from_ps(row_ids)
        drawn = torch.normal(
            0.0,
            v_stddev,
            size=(self.feature_num, self.rank),
            dtype=DTYPE,
            generator=generator,
        )
        v_delta = {j: drawn[j] - current[j] for j in row_ids}
        self.push_to_ps(0.0, torch.zeros_like(w), v_delta)

    def snapshot(self) -> Snapshot:
        """拉取全部参数"""
        return self.pull_from_ps(range(self.feature_num))

    def predict(
        self, data_block: DataBlock, predictor: Optional[FactorizationMachine] = None
    ) -> pd.DataFrame:
        """
        对数据块中的每条样本进行预测
        :param data_block: 待预测数据
        :param predictor: 预测器，决定截断边界，默认不截断
        :return: 含 pred, label 两列的 DataFrame
        """
        predictor = predictor or FactorizationMachine()
        w0, w, v = self.snapshot()
        preds, labels = [], []
        for sample in data_block:
            preds.append(predictor.predict(sample.x, w0, w, v))
            labels.append(sample.y)
        return pd.DataFrame({"pred": preds, "label": labels})

    def state_dict(self) -> dict[str, torch.Tensor]:
        w0, w, v = self.snapshot()
        v = torch.stack([v[j] for j in range(self.feature_num)])
        return {"w0": torch.tensor(w0, dtype=DTYPE), "w": w, "v": v}

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(self.state_dict(), path)
        logger.info(f"模型已保存至: {path}")

    def load(self, path: str | Path) -> None:
        """
        从文件载入参数，覆盖参数服务器中的当前值
        """
        state = torch.load(path, map_location="cpu")
        if tuple(state["v"].shape) != (self.feature_num, self.rank):
            raise ValueError(
                f"模型维度不匹配: {tuple(state['v'].shape)} != ({self.feature_num}, {self.rank})"
            )
        w0, w, v = self.snapshot()
        v_delta = {j: state["v"][j].to(DTYPE) - v[j] for j in range(self.feature_num)}
        self.push_to_ps(state["w0"].item() - w0, state["w"].to(DTYPE) - w, v_delta)
        logger.info(f"已从 {path} 载入模型参数")
