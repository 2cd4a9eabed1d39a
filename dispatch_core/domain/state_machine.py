from __future__ import annotations

from enum import StrEnum


class TaskType(StrEnum):
    DELIVERY = "delivery"
    REPAIR = "repair"


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DELIVERING = "delivering"
    EXCEPTION = "exception"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RepairStatus(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TaskStatus = DeliveryStatus | RepairStatus


DELIVERY_ALLOWED_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.REJECTED,
        DeliveryStatus.CANCELLED,
    },
    DeliveryStatus.ACCEPTED: {
        DeliveryStatus.DELIVERING,
        DeliveryStatus.EXCEPTION,
        DeliveryStatus.CANCELLED,
    },
    DeliveryStatus.DELIVERING: {
        DeliveryStatus.COMPLETED,
        DeliveryStatus.EXCEPTION,
    },
    DeliveryStatus.EXCEPTION: {
        DeliveryStatus.PENDING,
        DeliveryStatus.CANCELLED,
    },
    DeliveryStatus.COMPLETED: set(),
    DeliveryStatus.REJECTED: set(),
    DeliveryStatus.CANCELLED: set(),
}


REPAIR_ALLOWED_TRANSITIONS: dict[RepairStatus, set[RepairStatus]] = {
    RepairStatus.PENDING: {
        RepairStatus.ASSIGNED,
        RepairStatus.PROCESSING,
        RepairStatus.CANCELLED,
    },
    RepairStatus.ASSIGNED: {
        RepairStatus.PROCESSING,
        RepairStatus.CANCELLED,
    },
    RepairStatus.PROCESSING: {
        RepairStatus.COMPLETED,
        RepairStatus.CANCELLED,
    },
    RepairStatus.COMPLETED: set(),
    RepairStatus.CANCELLED: set(),
}


STATUS_ENUMS: dict[TaskType, type[DeliveryStatus] | type[RepairStatus]] = {
    TaskType.DELIVERY: DeliveryStatus,
    TaskType.REPAIR: RepairStatus,
}

TRANSITION_GRAPHS: dict[TaskType, dict] = {
    TaskType.DELIVERY: DELIVERY_ALLOWED_TRANSITIONS,
    TaskType.REPAIR: REPAIR_ALLOWED_TRANSITIONS,
}

ALLOCATION_TRANSITIONS: dict[TaskType, tuple[TaskStatus, TaskStatus]] = {
    TaskType.DELIVERY: (DeliveryStatus.PENDING, DeliveryStatus.ACCEPTED),
    TaskType.REPAIR: (RepairStatus.PENDING, RepairStatus.ASSIGNED),
}

# Audit tags written when a task enters a status outside of allocation.
STATUS_CHANGE_ACTIONS: dict[TaskType, dict[str, str]] = {
    TaskType.DELIVERY: {
        DeliveryStatus.PENDING: "ORDER_REQUEUED",
        DeliveryStatus.ACCEPTED: "ORDER_ACCEPTED",
        DeliveryStatus.DELIVERING: "ORDER_DISPATCHED",
        DeliveryStatus.EXCEPTION: "ORDER_EXCEPTION",
        DeliveryStatus.COMPLETED: "ORDER_COMPLETED",
        DeliveryStatus.REJECTED: "ORDER_REJECTED",
        DeliveryStatus.CANCELLED: "ORDER_CANCELLED",
    },
    TaskType.REPAIR: {
        RepairStatus.PENDING: "REPAIR_REQUEUED",
        RepairStatus.ASSIGNED: "REPAIR_ASSIGNED",
        RepairStatus.PROCESSING: "REPAIR_PROCESSING",
        RepairStatus.COMPLETED: "REPAIR_COMPLETED",
        RepairStatus.CANCELLED: "REPAIR_CANCELLED",
    },
}

ALL_STATUS_CHANGE_ACTIONS: frozenset[str] = frozenset(
    action for actions in STATUS_CHANGE_ACTIONS.values() for action in actions.values()
)


def normalize_task_type(raw: TaskType | str | None) -> TaskType | None:
    if raw is None:
        return None
    if isinstance(raw, TaskType):
        return raw
    try:
        return TaskType(raw.strip().lower())
    except ValueError:
        return None


def normalize_status(task_type: TaskType | str, raw: TaskStatus | str | None) -> TaskStatus | None:
    """Map a raw status string onto the task type's enum, or None when unknown."""
    resolved_type = normalize_task_type(task_type)
    if resolved_type is None or raw is None:
        return None
    enum_cls = STATUS_ENUMS[resolved_type]
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        return None


def can_transition(
    task_type: TaskType | str,
    current: TaskStatus | str | None,
    target: TaskStatus | str | None,
) -> bool:
    resolved_type = normalize_task_type(task_type)
    if resolved_type is None:
        return False
    source = normalize_status(resolved_type, current)
    destination = normalize_status(resolved_type, target)
    if source is None or destination is None:
        return False
    return destination in TRANSITION_GRAPHS[resolved_type].get(source, set())


def allowed_next_statuses(task_type: TaskType | str, current: TaskStatus | str) -> list[TaskStatus]:
    resolved_type = normalize_task_type(task_type)
    if resolved_type is None:
        return []
    source = normalize_status(resolved_type, current)
    if source is None:
        return []
    return sorted(TRANSITION_GRAPHS[resolved_type].get(source, set()))


def is_terminal(task_type: TaskType | str, status: TaskStatus | str) -> bool:
    resolved_type = normalize_task_type(task_type)
    if resolved_type is None:
        return False
    source = normalize_status(resolved_type, status)
    if source is None:
        return False
    return not TRANSITION_GRAPHS[resolved_type][source]


def initial_status(task_type: TaskType) -> TaskStatus:
    return STATUS_ENUMS[task_type]("pending")


def allocation_target_status(task_type: TaskType) -> TaskStatus:
    return ALLOCATION_TRANSITIONS[task_type][1]


def status_change_action(task_type: TaskType, status: TaskStatus) -> str:
    return STATUS_CHANGE_ACTIONS[task_type][status]
