import math

import pytest

from conftest import make_x
from psfm.layers.fm import FactorizationMachine
from psfm.layers.gradient import LearnType, SGDUpdater
from psfm.utils.errors import InvalidLearnTypeError
from psfm.utils.vectors import dense


def test_single_instance_regression_step():
    """rank=1, x={0: 1}, y=1，全零参数，lr=0.1"""
    fm = FactorizationMachine()
    updater = SGDUpdater(rank=1, lr=0.1, learn_type="r")
    x = make_x(1, {0: 1.0})
    w = dense([0.0])
    v = {0: dense([0.0])}

    pre = fm.predict(x, 0.0, w, v)
    assert pre == 0.0
    assert updater.derivation_multiplier(1.0, pre) == -1.0

    w0 = updater.update(x, 1.0, pre, 0.0, w, v)
    assert w0 == pytest.approx(0.1)
    assert w[0].item() == pytest.approx(0.1)
    assert v[0][0].item() == 0.0


def test_regression_exact_prediction_leaves_params_unchanged():
    updater = SGDUpdater(rank=2, lr=0.5, learn_type=LearnType.REGRESSION)
    x = make_x(3, {0: 1.0, 2: -2.0})
    w = dense([0.3, -0.2, 0.7])
    v = {0: dense([0.1, 0.2]), 2: dense([-0.4, 0.5])}
    assert updater.derivation_multiplier(1.25, 1.25) == 0.0

    w0 = updater.update(x, 1.25, 1.25, 0.8, w, v)
    assert w0 == 0.8
    assert w.tolist() == [0.3, -0.2, 0.7]
    assert v[0].tolist() == [0.1, 0.2]
    assert v[2].tolist() == [-0.4, 0.5]


@pytest.mark.parametrize("y", [1.0, 0.5, 2.5])
@pytest.mark.parametrize("pre", [-3.0, -0.5, 0.0, 0.5, 3.0])
def test_classification_multiplier_is_bounded(y, pre):
    dm = LearnType.CLASSIFICATION.derivation_multiplier(y, pre)
    assert -abs(y) < dm < 0
    # 与原始公式一致
    assert dm == pytest.approx(-y * (1.0 - 1.0 / (1.0 + math.exp(-y * pre))))

    dm_neg = LearnType.CLASSIFICATION.derivation_multiplier(-y, pre)
    assert 0 < dm_neg < abs(y)


def test_classification_multiplier_does_not_overflow():
    assert LearnType.CLASSIFICATION.derivation_multiplier(1.0, -1000.0) == pytest.approx(-1.0)
    assert LearnType.CLASSIFICATION.derivation_multiplier(-1.0, -1000.0) == pytest.approx(0.0)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("c", LearnType.CLASSIFICATION),
        ("Classification", LearnType.CLASSIFICATION),
        ("r", LearnType.REGRESSION),
        (" regression ", LearnType.REGRESSION),
        (LearnType.REGRESSION, LearnType.REGRESSION),
    ],
)
def test_parse_learn_type(value, expected):
    assert LearnType.parse(value) is expected


@pytest.mark.parametrize("value", ["x", "", "ranking", None, 1])
def test_invalid_learn_type_rejected_at_construction(value):
    with pytest.raises(InvalidLearnTypeError):
        SGDUpdater(rank=2, lr=0.1, learn_type=value)


def test_weight_decay_applies_to_whole_vector():
    updater = SGDUpdater(rank=1, lr=0.1, reg1=0.5)
    x = make_x(3, {0: 1.0})
    w = dense([1.0, 1.0, 1.0])
    # dm = 0 时只剩权重衰减
    updater.update_w(x, 0.0, w)
    assert w.tolist() == pytest.approx([0.95, 0.95, 0.95])

    updater.update_w(x, 2.0, w)
    assert w.tolist() == pytest.approx([0.95 * 0.95 - 0.2, 0.95 * 0.95, 0.95 * 0.95])


def test_bias_regularization():
    updater = SGDUpdater(rank=1, lr=0.1, reg0=0.5)
    assert updater.update_w0(2.0, 1.0) == pytest.approx(2.0 - 0.1 * (1.0 + 1.0))


def test_embedding_update_uses_pre_update_rows():
    updater = SGDUpdater(rank=2, lr=0.1)
    x = make_x(2, {0: 1.0, 1: 2.0})
    v = {0: dense([0.1, 0.2]), 1: dense([0.3, -0.1])}
    updater.update_v(x, 0.5, v)
    # dot = [0.7, 0.0]
    # grad_0 = [0.7 - 0.1, 0.0 - 0.2], grad_1 = [1.4 - 1.2, 0.0 + 0.4]
    assert v[0].tolist() == pytest.approx([0.07, 0.21])
    assert v[1].tolist() == pytest.approx([0.29, -0.12])


def test_embedding_regularization():
    updater = SGDUpdater(rank=1, lr=0.1, reg2=1.0)
    x = make_x(2, {0: 1.0})
    v = {0: dense([2.0]), 1: dense([5.0])}
    updater.update_v(x, 0.0, v)
    assert v[0].item() == pytest.approx(1.8)
    # 未出现的特征不衰减
    assert v[1].item() == 5.0


def test_opposite_labels_nearly_cancel():
    fm = FactorizationMachine()
    updater = SGDUpdater(rank=1, lr=0.01)
    x = make_x(1, {0: 1.0})
    w = dense([0.0])
    v = {0: dense([0.0])}

    w0 = 0.0
    w0 = updater.update(x, 1.0, fm.predict(x, w0, w, v), w0, w, v)
    first_step = abs(w0)
    w0 = updater.update(x, -1.0, fm.predict(x, w0, w, v), w0, w, v)

    assert first_step == pytest.approx(0.01)
    assert abs(w0) < 0.1 * first_step
    assert abs(w[0].item()) < 0.1 * first_step
