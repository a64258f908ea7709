from __future__ import annotations

import re

from taskorch.models import Agent, Department
from taskorch.store.base import TaskRepository


class AgentDirectory:
    """Repository-backed lookups for departments, leaders and keyword routing."""

    def __init__(self, repository: TaskRepository, *, planning_department_id: str = "planning") -> None:
        self.repository = repository
        self.planning_department_id = planning_department_id

    def departments(self) -> list[Department]:
        return sorted(self.repository.list_departments(), key=lambda dept: (dept.sort_order, dept.id))

    def department_name(self, department_id: str | None) -> str:
        if not department_id:
            return "Unassigned"
        for department in self.repository.list_departments():
            if department.id == department_id:
                return department.name
        return department_id

    def sort_order(self, department_id: str | None) -> int:
        for department in self.repository.list_departments():
            if department.id == department_id:
                return department.sort_order
        return 1_000

    def find_department_leader(self, department_id: str | None) -> Agent | None:
        if not department_id:
            return None
        leaders = [
            agent
            for agent in self.repository.list_agents(department_id=department_id)
            if agent.is_leader and agent.status != "offline"
        ]
        if not leaders:
            return None
        return sorted(leaders, key=lambda agent: agent.name)[0]

    def planning_leader(self) -> Agent | None:
        return self.find_department_leader(self.planning_department_id)

    def all_leaders(self) -> list[Agent]:
        order = {dept.id: dept.sort_order for dept in self.repository.list_departments()}
        leaders = [
            agent
            for agent in self.repository.list_agents()
            if agent.is_leader and agent.status != "offline"
        ]
        return sorted(leaders, key=lambda agent: (order.get(agent.department_id or "", 1_000), agent.name))

    def detect_departments(self, text: str) -> list[str]:
        """Department ids whose routing keywords appear in ``text``, in sort order."""
        lowered = text.lower()
        matched: list[str] = []
        for department in self.departments():
            for keyword in department.keywords:
                needle = keyword.strip().lower()
                if not needle:
                    continue
                if needle.isascii():
                    found = re.search(rf"(?<![a-z0-9]){re.escape(needle)}", lowered) is not None
                else:
                    found = needle in lowered
                if found:
                    matched.append(department.id)
                    break
        return matched

    def route_department(self, text: str, owner_department_id: str | None) -> str | None:
        """First foreign department the text points at, or None for own-department work."""
        for department_id in self.detect_departments(text):
            if department_id != owner_department_id:
                return department_id
        return None

    def find_related_departments(self, task_id: str) -> list[str]:
        task = self.repository.get_task(task_id)
        if task is None:
            return []
        related: list[str] = []
        if task.department_id:
            related.append(task.department_id)
        for subtask in self.repository.list_subtasks(task_id):
            if subtask.target_department_id and subtask.target_department_id not in related:
                related.append(subtask.target_department_id)
        for department_id in self.detect_departments(f"{task.title} {task.description}"):
            if department_id not in related:
                related.append(department_id)
        return related

    def review_leaders(self, task_id: str, *, min_leaders: int = 2) -> list[Agent]:
        """Leaders taking part in a meeting for ``task_id``; planning leader first."""
        leaders: list[Agent] = []
        seen: set[str] = set()
        for department_id in self.find_related_departments(task_id):
            leader = self.find_department_leader(department_id)
            if leader is not None and leader.id not in seen:
                leaders.append(leader)
                seen.add(leader.id)
        planning = self.planning_leader()
        if planning is not None:
            if planning.id in seen:
                leaders = [leader for leader in leaders if leader.id != planning.id]
            leaders.insert(0, planning)
            seen.add(planning.id)
        if len(leaders) < min_leaders:
            for leader in self.all_leaders():
                if leader.id not in seen:
                    leaders.append(leader)
                    seen.add(leader.id)
        return leaders
