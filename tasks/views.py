from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import get_request_id
from common.permissions import Permission, Resource, ResourcePermission
from tasks.serializers import TaskSerializer
from tasks.services import create_task, delete_task, get_task_for_user, task_stats, tasks_for_user, update_task


class TaskViewSet(viewsets.ModelViewSet):
    serializer_class = TaskSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.TASKS
    # Creators may delete their own tasks; delete_task enforces the rest.
    permission_action_map = {"destroy": Permission.WRITE, "stats": Permission.VIEW}

    def get_queryset(self):
        queryset = tasks_for_user(self.request.user)
        params = self.request.query_params

        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("priority"):
            queryset = queryset.filter(priority=params["priority"])
        if params.get("assigned_to"):
            queryset = queryset.filter(assigned_to_id=params["assigned_to"])
        if params.get("page_key"):
            queryset = queryset.filter(page_key=params["page_key"])
        return queryset

    def get_object(self):
        task = get_task_for_user(self.kwargs["pk"], self.request.user)
        self.check_object_permissions(self.request, task)
        return task

    def perform_create(self, serializer):
        serializer.instance = create_task(
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_update(self, serializer):
        serializer.instance = update_task(
            serializer.instance,
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_destroy(self, instance):
        delete_task(instance, self.request.user, request_id=get_request_id(self.request))

    @action(detail=False, methods=["get"], url_path="stats", pagination_class=None)
    def stats(self, request):
        return Response(task_stats(tasks_for_user(request.user)))
