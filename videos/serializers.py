from rest_framework import serializers
from .models import Job


class JobSerializer(serializers.ModelSerializer):
    class Meta:
        model = Job
        fields = [
            "id",
            "status",
            "original_name",
            "master_playlist_url",
            "error_kind",
            "cancel_requested",
            "created_at",
            "updated_at",
        ]


class VideoUploadSerializer(serializers.Serializer):
    video = serializers.FileField(allow_empty_file=True)
