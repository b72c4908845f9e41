from typing import ClassVar, Sequence

from engines.arithmetic import Task
from schemas import TaskAttempt


class BasePredictor:
    kind: ClassVar[str] = "base"

    def predict(self, state: Sequence[float], task: Task, history: Sequence[TaskAttempt]) -> float:
        raise NotImplementedError
