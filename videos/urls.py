from django.urls import path
from .views import UploadVideoView, JobDetailView, CancelJobView

urlpatterns = [
    path("jobs/upload/", UploadVideoView.as_view(), name="upload_video"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("jobs/<uuid:job_id>/cancel/", CancelJobView.as_view(), name="job_cancel"),
]
