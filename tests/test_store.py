import threading

import pytest
import torch

from psfm.ps.context import TaskContext
from psfm.ps.store import InMemoryParameterStore
from psfm.utils.errors import ParameterStoreError
from psfm.utils.vectors import clone_rows, dense, rows_delta


@pytest.fixture
def store():
    return InMemoryParameterStore(feature_num=4, rank=2)


def test_pull_returns_independent_copies(store):
    w0, w, v = store.pull([0, 2])
    assert w0 == 0.0
    assert w.tolist() == [0.0] * 4
    assert sorted(v) == [0, 2]
    w.add_(1.0)
    v[0].add_(1.0)
    _, w_again, v_again = store.pull([0])
    assert w_again.tolist() == [0.0] * 4
    assert v_again[0].tolist() == [0.0, 0.0]


def test_push_then_pull_returns_local_replica(store):
    w0, w, v = store.pull([1, 3])
    local_w0 = w0 + 0.25
    local_w = w.clone()
    local_w[1] = -1.5
    local_v = clone_rows(v)
    local_v[3][0] = 0.75

    store.push(local_w0 - w0, local_w - w, rows_delta(local_v, v))
    w0_new, w_new, v_new = store.pull([1, 3])
    assert w0_new == local_w0
    assert torch.equal(w_new, local_w)
    assert torch.equal(v_new[1], local_v[1])
    assert torch.equal(v_new[3], local_v[3])

    # 非零起点时按增量累加
    store.push(0.5, dense([1.0, 1.0, 1.0, 1.0]), {3: dense([1.0, 1.0])})
    w0_new, w_new, v_new = store.pull([3])
    assert w0_new == pytest.approx(0.75)
    assert w_new.tolist() == pytest.approx([1.0, -0.5, 1.0, 1.0])
    assert v_new[3].tolist() == pytest.approx([1.75, 1.0])


def test_invalid_rows_and_shapes(store):
    with pytest.raises(ParameterStoreError):
        store.pull([4])
    with pytest.raises(ParameterStoreError):
        store.push(0.0, dense(3), {})
    with pytest.raises(ParameterStoreError):
        store.push(0.0, dense(4), {0: dense(3)})
    with pytest.raises(ParameterStoreError):
        store.push(0.0, dense(4), {-1: dense(2)})


def test_barrier_waits_for_all_workers():
    store = InMemoryParameterStore(feature_num=2, rank=1, workers=3, barrier_timeout=10)
    passed = []

    def worker(i):
        store.barrier()
        passed.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(passed) == [0, 1, 2]
    assert store.version == 1


def test_barrier_timeout_is_store_error():
    store = InMemoryParameterStore(feature_num=2, rank=1, workers=2, barrier_timeout=0.05)
    with pytest.raises(ParameterStoreError):
        store.barrier()


def test_aborted_barrier_is_store_error(store):
    store.abort()
    with pytest.raises(ParameterStoreError):
        store.barrier()


def test_task_context_counter():
    ctx = TaskContext(task_index=0)
    assert ctx.is_initializer
    assert ctx.get_iteration() == 0
    ctx.inc_iteration()
    ctx.inc_iteration()
    assert ctx.get_iteration() == 2
    assert not TaskContext(task_index=3).is_initializer
