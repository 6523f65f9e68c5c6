from rest_framework import serializers

from core.serializers import UserSummarySerializer
from tasks.models import Task


class TaskSerializer(serializers.ModelSerializer):
    assigned_to_detail = UserSummarySerializer(source="assigned_to", read_only=True)
    created_by_detail = UserSummarySerializer(source="created_by", read_only=True)

    class Meta:
        model = Task
        fields = [
            "id",
            "title",
            "description",
            "status",
            "priority",
            "assigned_to",
            "assigned_to_detail",
            "created_by",
            "created_by_detail",
            "page_key",
            "due_date",
            "completed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_by", "completed_at", "created_at", "updated_at"]
