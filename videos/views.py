import logging

from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .errors import InputError
from .models import Job
from .serializers import JobSerializer, VideoUploadSerializer
from .tasks import process_upload
from .utils import stage_upload

logger = logging.getLogger(__name__)

# The worker only polls the cancel flag until transcoding ends
CANCELLABLE = {Job.Status.PENDING, Job.Status.TRANSCODING}


class UploadVideoView(views.APIView):
    """
    Accepts a multipart video upload, stages it under MEDIA_ROOT, creates a Job
    with a fresh id and enqueues the transcode-and-publish task.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = VideoUploadSerializer(data=request.data)
        if not ser.is_valid():
            return Response(
                {"error": InputError.category, "detail": ser.errors},
                status=InputError.http_status,
            )

        upload = ser.validated_data["video"]
        rel_path = stage_upload(upload)
        job = Job.objects.create(source_path=rel_path, original_name=upload.name[:255])
        logger.info("Accepted upload %s as job %s", upload.name, job.id)

        process_upload.delay(str(job.id))  # queue background processing
        return Response({"job_id": str(job.id)}, status=status.HTTP_202_ACCEPTED)


class JobDetailView(views.APIView):
    """Job state plus the result body; the HTTP status follows the result class."""
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        try:
            job = Job.objects.get(pk=job_id)
        except Job.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)

        body, code = job.to_response()
        data = JobSerializer(job).data
        data.update(body)
        return Response(data, status=code)


class CancelJobView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request, job_id):
        try:
            job = Job.objects.get(pk=job_id)
        except Job.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)

        if job.is_terminal:
            return Response(
                {"detail": f"Job already {job.status.lower()}"}, status=status.HTTP_409_CONFLICT
            )
        if job.status not in CANCELLABLE:
            return Response(
                {"detail": f"Job is {job.status.lower()}; too late to cancel"},
                status=status.HTTP_409_CONFLICT,
            )

        # Only the flag is written; the worker owns every other column
        Job.objects.filter(pk=job.pk).update(cancel_requested=True)
        logger.info("Cancellation requested for job %s", job.id)
        return Response(
            {"job_id": str(job.id), "status": job.status, "cancel_requested": True},
            status=status.HTTP_202_ACCEPTED,
        )
