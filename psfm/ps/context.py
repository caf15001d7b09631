class TaskContext:
    """
    worker 的执行上下文
    :param task_index: worker 编号，编号为 0 的 worker 负责参数初始化
    :param iteration: 当前已完成的轮数
    """

    def __init__(self, task_index: int = 0, iteration: int = 0):
        self.task_index = task_index
        self._iteration = iteration

    @property
    def is_initializer(self) -> bool:
        return self.task_index == 0

    def get_iteration(self) -> int:
        return self._iteration

    def inc_iteration(self) -> None:
        self._iteration += 1

    def __repr__(self):
        return f"TaskContext(task_index={self.task_index}, iteration={self._iteration})"
