import argparse
import sys
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from config import FM_DEFAULTS, FMConfig
from psfm.data.dataset import DataBlock
from psfm.models.fm_model import FMModel
from psfm.ps.context import TaskContext
from psfm.ps.store import InMemoryParameterStore
from psfm.train import FMLearner, TrainMetrics


def run_workers(
    blocks: list[DataBlock],
    conf: FMConfig,
    barrier_timeout: Optional[float] = None,
) -> tuple[FMModel, list[TrainMetrics]]:
    """
    在同一进程内启动多个 worker 线程，共享一个参数服务器
    :param blocks: 每个 worker 的训练数据
    :param conf: 超参数配置
    :param barrier_timeout: 同步屏障的超时秒数
    :return: 训练后的模型，以及每个 worker 的损失记录
    """
    store = InMemoryParameterStore(
        conf.feature_num, conf.rank, workers=len(blocks), barrier_timeout=barrier_timeout
    )
    metrics = [TrainMetrics() for _ in blocks]
    models: list[Optional[FMModel]] = [None] * len(blocks)
    errors: list[BaseException] = []

    def work(index: int):
        try:
            fea_used = blocks[index].feature_used(conf.feature_num)
            learner = FMLearner(
                TaskContext(index), store, conf, fea_used, metrics=metrics[index]
            )
            models[index] = learner.train(blocks[index])
        except Exception as e:
            logger.exception(f"worker {index} 训练出错: {repr(e)}")
            errors.append(e)
            # 唤醒其他仍在屏障处等待的 worker
            store.abort()

    threads = [
        threading.Thread(target=work, args=(i,), name=f"fm-worker-{i}")
        for i in range(len(blocks))
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    if errors:
        raise errors[0]
    return models[0], metrics


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="基于参数服务器的 FM 训练")
    parser.add_argument("--train", required=True, help="libsvm 格式的训练数据")
    parser.add_argument("--feature-num", type=int, default=None)
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--epochs", type=int, default=FM_DEFAULTS["epoch_num"])
    parser.add_argument("--rank", type=int, default=FM_DEFAULTS["rank"])
    parser.add_argument("--lr", type=float, default=FM_DEFAULTS["lr"])
    parser.add_argument(
        "--learn-type", choices=["c", "r"], default=FM_DEFAULTS["learn_type"]
    )
    parser.add_argument("--reg0", type=float, default=FM_DEFAULTS["reg0"])
    parser.add_argument("--reg1", type=float, default=FM_DEFAULTS["reg1"])
    parser.add_argument("--reg2", type=float, default=FM_DEFAULTS["reg2"])
    parser.add_argument("--v-stddev", type=float, default=FM_DEFAULTS["v_stddev"])
    parser.add_argument("--min-p", type=float, default=None)
    parser.add_argument("--max-p", type=float, default=None)
    parser.add_argument("--seed", type=int, default=FM_DEFAULTS["seed"])
    parser.add_argument("--barrier-timeout", type=float, default=None)
    parser.add_argument("--model-out", type=Path, default=None)
    parser.add_argument("--plot", type=Path, default=None)
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--no-progress", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.log_file:
        logger.add(args.log_file, rotation="1 day", retention="30 days", level="INFO")

    try:
        data = DataBlock.from_svmlight(args.train, args.feature_num)
        # 未指定截断边界时使用训练标签的取值范围
        min_y, max_y = data.label_range()
        feature_num = args.feature_num or data.samples[0].x.dim
        conf = FMConfig(
            learn_type=args.learn_type,
            feature_num=feature_num,
            epoch_num=args.epochs,
            rank=args.rank,
            reg0=args.reg0,
            reg1=args.reg1,
            reg2=args.reg2,
            lr=args.lr,
            v_stddev=args.v_stddev,
            min_p=min_y if args.min_p is None else args.min_p,
            max_p=max_y if args.max_p is None else args.max_p,
            seed=args.seed,
            show_progress=not args.no_progress,
        ).validate()
    except Exception as e:
        logger.exception(f"数据或配置加载出错: {repr(e)}")
        return 1

    try:
        model, metrics = run_workers(
            data.split(args.workers), conf, barrier_timeout=args.barrier_timeout
        )
        if args.model_out:
            model.save(args.model_out)
        if args.plot:
            metrics[0].draw(args.plot)
        logger.info(f"各轮损失:\n{metrics[0].to_frame().to_string(index=False)}")
    except Exception as e:
        logger.exception(f"模型训练出错: {repr(e)}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
