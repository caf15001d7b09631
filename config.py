import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional

# 默认超参数，与原始 FM 学习器的默认配置保持一致
FM_DEFAULTS = {
    # 学习类型: c 为分类 (logistic loss), r 为回归 (平方误差)
    "learn_type": "r",
    "feature_num": 10000,
    "epoch_num": 10,
    "rank": 10,
    # 偏置、一阶权重、二阶嵌入的 L2 正则系数
    "reg0": 0.0,
    "reg1": 0.0,
    "reg2": 0.0,
    "lr": 0.001,
    # 嵌入矩阵正态初始化的标准差
    "v_stddev": 0.1,
    # 预测值截断边界
    "min_p": -math.inf,
    "max_p": math.inf,
    "seed": 42,
    "show_progress": True,
}

# 兼容参数服务器风格的配置键
CONF_KEYS = {
    "ml.fm.learn_type": "learn_type",
    "ml.feature.num": "feature_num",
    "ml.epoch.num": "epoch_num",
    "ml.fm.rank": "rank",
    "ml.fm.reg0": "reg0",
    "ml.fm.reg1": "reg1",
    "ml.fm.reg2": "reg2",
    "ml.learn.rate": "lr",
    "ml.fm.v.stddev": "v_stddev",
    "ml.fm.min_p": "min_p",
    "ml.fm.max_p": "max_p",
}


@dataclass
class FMConfig:
    """FM 学习器的配置项"""

    learn_type: str = FM_DEFAULTS["learn_type"]
    feature_num: int = FM_DEFAULTS["feature_num"]
    epoch_num: int = FM_DEFAULTS["epoch_num"]
    rank: int = FM_DEFAULTS["rank"]
    reg0: float = FM_DEFAULTS["reg0"]
    reg1: float = FM_DEFAULTS["reg1"]
    reg2: float = FM_DEFAULTS["reg2"]
    lr: float = FM_DEFAULTS["lr"]
    v_stddev: float = FM_DEFAULTS["v_stddev"]
    min_p: float = FM_DEFAULTS["min_p"]
    max_p: float = FM_DEFAULTS["max_p"]
    seed: Optional[int] = FM_DEFAULTS["seed"]
    show_progress: bool = FM_DEFAULTS["show_progress"]

    @classmethod
    def from_dict(cls, conf: dict[str, Any]) -> "FMConfig":
        """
        从字典构造配置，支持短键名和 ml.* 风格的键名
        :param conf: 配置字典
        :return: 校验后的配置
        """
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in conf.items():
            name = CONF_KEYS.get(key, key)
            if name not in names:
                raise ValueError(f"未知的配置项: {key}")
            kwargs[name] = value
        return cls(**kwargs).validate()

    def validate(self) -> "FMConfig":
        # 延迟导入，避免 config 与 psfm 循环依赖
        from psfm.layers.gradient import LearnType

        LearnType.parse(self.learn_type)
        if self.feature_num <= 0:
            raise ValueError(f"feature_num 必须为正数: {self.feature_num}")
        if self.rank <= 0:
            raise ValueError(f"rank 必须为正数: {self.rank}")
        if self.epoch_num < 0:
            raise ValueError(f"epoch_num 不能为负数: {self.epoch_num}")
        if self.v_stddev < 0:
            raise ValueError(f"v_stddev 不能为负数: {self.v_stddev}")
        if self.min_p > self.max_p:
            raise ValueError(f"截断边界无效: min_p={self.min_p} > max_p={self.max_p}")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
