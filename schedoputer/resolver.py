from typing import List, Sequence

from .models import Task


def resolve(tasks: Sequence[Task]) -> List[Task]:
    """Move blocked tasks whose predecessor has completed to pending.

    Returns the tasks that changed. Order is left untouched and running it
    again without a new completion changes nothing.
    """
    by_id = {task.id: task for task in tasks}
    unblocked = []
    for task in tasks:
        if task.status != "blocked" or task.depends_on is None:
            continue
        dependency = by_id.get(task.depends_on)
        if dependency is not None and dependency.status == "completed":
            task.status = "pending"
            unblocked.append(task)
    return unblocked


def dependency_met(task: Task, tasks: Sequence[Task]) -> bool:
    if task.depends_on is None:
        return True
    for other in tasks:
        if other.id == task.depends_on:
            return other.status == "completed"
    return False
