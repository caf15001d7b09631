import matplotlib
import pytest

from config import FMConfig
from psfm.data.dataset import DataBlock, LabeledData
from psfm.utils.vectors import SparseSortedVector

# 测试环境无显示设备
matplotlib.use("Agg")


def make_x(dim: int, features: dict[int, float]) -> SparseSortedVector:
    return SparseSortedVector.from_dict(dim, features)


@pytest.fixture
def conf() -> FMConfig:
    return FMConfig(
        learn_type="r",
        feature_num=4,
        epoch_num=3,
        rank=2,
        lr=0.05,
        v_stddev=0.01,
        seed=7,
        show_progress=False,
    )


@pytest.fixture
def regression_block() -> DataBlock:
    """y = 1.0 * x0 + 2.0 * x1 - 0.5 * x2，特征 3 从不出现"""
    block = DataBlock()
    rows = [
        {0: 1.0},
        {1: 1.0},
        {2: 1.0},
        {0: 1.0, 1: 1.0},
        {1: 0.5, 2: 1.0},
        {0: 0.5, 2: 0.5},
    ]
    for features in rows:
        y = 1.0 * features.get(0, 0.0) + 2.0 * features.get(1, 0.0) - 0.5 * features.get(2, 0.0)
        block.put(LabeledData(make_x(4, features), y))
    return block
