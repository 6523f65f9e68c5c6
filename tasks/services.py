from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from common.audit import log_activity
from common.errors import ForbiddenError, ValidationError, storage_errors
from common.permissions import Permission, Resource, can_view_all, scope_queryset_for_user, user_has_permission
from common.utils import get_or_not_found, model_snapshot
from core.models import Notification
from core.notifications import notify_user
from tasks.models import Task

TASK_SNAPSHOT_FIELDS = ("title", "status", "priority", "assigned_to_id", "created_by_id", "due_date", "completed_at")
TASK_UPDATABLE_FIELDS = ("title", "description", "status", "priority", "assigned_to", "page_key", "due_date")
TASK_OWNER_FIELDS = ("assigned_to", "created_by")


def tasks_for_user(user):
    return scope_queryset_for_user(
        Task.objects.select_related("assigned_to", "created_by"),
        user,
        Resource.TASKS,
        TASK_OWNER_FIELDS,
    )


def get_task_for_user(task_id, user):
    task = get_or_not_found(Task.objects.select_related("assigned_to", "created_by"), "Task", task_id)
    if not can_user_access_task(task, user):
        raise ForbiddenError("You do not have access to this task")
    return task


def can_user_access_task(task, user):
    if can_view_all(user, Resource.TASKS):
        return True
    return user.pk in {task.assigned_to_id, task.created_by_id}


def can_user_delete_task(task, user):
    return user_has_permission(user, Resource.TASKS, Permission.DELETE) or task.created_by_id == user.pk


def _link(task):
    return f"/tasks/{task.id}"


def create_task(data, user, *, request_id=None):
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("Task title is required", errors={"title": ["This field is required."]})

    assignee = data.get("assigned_to")
    if assignee is not None and assignee.pk != user.pk and not user_has_permission(user, Resource.TASKS, Permission.WRITE):
        raise ForbiddenError("You don't have permission to assign tasks to other users")

    fields = {field: data[field] for field in TASK_UPDATABLE_FIELDS if field in data}
    fields["title"] = title
    if fields.get("status") == Task.Status.COMPLETED:
        fields["completed_at"] = timezone.now()

    with storage_errors("create task"), transaction.atomic():
        task = Task.objects.create(created_by=user, **fields)

    log_activity(
        entity_type="task",
        entity_id=task.id,
        action="task_created",
        actor=user,
        new_state=model_snapshot(task, TASK_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    notify_user(
        user=task.assigned_to,
        title="New Task Assigned",
        message=f'{user.display_name} has assigned you a new task: "{task.title}"',
        type=Notification.Type.ACTION,
        link=_link(task),
        actor=user,
    )
    return task


def update_task(task, data, user, *, request_id=None):
    previous_state = model_snapshot(task, TASK_SNAPSHOT_FIELDS)
    previous_status = task.status

    reassigned_to = None
    if "assigned_to" in data:
        new_assignee = data["assigned_to"]
        if new_assignee is not None and new_assignee.pk != task.assigned_to_id:
            if not user_has_permission(user, Resource.TASKS, Permission.WRITE) and task.created_by_id != user.pk:
                raise ForbiddenError("Only users with write permission or task creators can reassign tasks")
            reassigned_to = new_assignee
    if "title" in data and not (data["title"] or "").strip():
        raise ValidationError("Task title is required", errors={"title": ["This field may not be blank."]})

    changed_fields = []
    for field in TASK_UPDATABLE_FIELDS:
        if field in data:
            setattr(task, field, data[field])
            changed_fields.append(field)
    if not changed_fields:
        return task

    completed = task.status == Task.Status.COMPLETED and previous_status != Task.Status.COMPLETED
    if completed:
        task.completed_at = timezone.now()
        changed_fields.append("completed_at")
    elif task.status != Task.Status.COMPLETED and task.completed_at is not None:
        task.completed_at = None
        changed_fields.append("completed_at")

    with storage_errors("update task"), transaction.atomic():
        task.save(update_fields=[*changed_fields, "updated_at"])

    log_activity(
        entity_type="task",
        entity_id=task.id,
        action="task_completed" if completed else "task_updated",
        actor=user,
        previous_state=previous_state,
        new_state=model_snapshot(task, TASK_SNAPSHOT_FIELDS),
        request_id=request_id,
    )

    if reassigned_to is not None:
        notify_user(
            user=reassigned_to,
            title="Task Reassigned",
            message=f'{user.display_name} has assigned you the task: "{task.title}"',
            type=Notification.Type.ACTION,
            link=_link(task),
            actor=user,
        )
    if completed:
        notify_user(
            user=task.created_by,
            title="Task Completed",
            message=f'{user.display_name} has completed the task: "{task.title}"',
            type=Notification.Type.SUCCESS,
            link=_link(task),
            actor=user,
        )
    return task


def delete_task(task, user, *, request_id=None):
    if not can_user_delete_task(task, user):
        raise ForbiddenError("You don't have permission to delete this task")

    task_pk = task.pk
    snapshot = model_snapshot(task, TASK_SNAPSHOT_FIELDS)
    with storage_errors("delete task"), transaction.atomic():
        task.delete()

    log_activity(
        entity_type="task",
        entity_id=task_pk,
        action="task_deleted",
        actor=user,
        previous_state=snapshot,
        request_id=request_id,
    )


def task_stats(queryset=None):
    queryset = Task.objects.all() if queryset is None else queryset
    today = timezone.localdate()
    return queryset.aggregate(
        total=Count("id"),
        pending=Count("id", filter=Q(status=Task.Status.PENDING)),
        in_progress=Count("id", filter=Q(status=Task.Status.IN_PROGRESS)),
        completed=Count("id", filter=Q(status=Task.Status.COMPLETED)),
        cancelled=Count("id", filter=Q(status=Task.Status.CANCELLED)),
        overdue=Count("id", filter=Q(due_date__lt=today) & ~Q(status=Task.Status.COMPLETED)),
    )
