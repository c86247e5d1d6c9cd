"""
Reports API.

Thin HTTP layer over ReportFacade. Workflow errors map to status codes:

- ValidationError   -> 400
- NotFoundError     -> 404
- InvalidStateError -> 409
- ConflictError     -> 409
- UnavailableError  -> 503

Error body: {"error": {"code", "message", "details"}}
"""
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from apps.core.observability import get_sanitized_logger, metrics

from .exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ReportError,
    UnavailableError,
    ValidationError,
)
from .facade import ReportFacade
from .permissions import HasClinicalRole
from .serializers import (
    AmendmentCreateSerializer,
    AmendmentRequestSerializer,
    AmendmentReviewSerializer,
    DraftUpdateSerializer,
    PatientReportSerializer,
    ReportVersionSerializer,
)

logger = get_sanitized_logger(__name__)

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)

# Seconds a client should wait before retrying a 503
RETRY_AFTER_SECONDS = 1


def report_error_response(exc: ReportError) -> Response:
    status_code = next(
        (code for error_class, code in ERROR_STATUS if isinstance(exc, error_class)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    response = Response({'error': exc.as_dict()}, status=status_code)
    if isinstance(exc, UnavailableError):
        response['Retry-After'] = str(RETRY_AFTER_SECONDS)
    return response


class ReportAPIViewMixin:
    """Facade access and ReportError handling shared by the report viewsets."""

    permission_classes = [IsAuthenticated, HasClinicalRole]

    def get_facade(self):
        return ReportFacade()

    def handle_exception(self, exc):
        if isinstance(exc, ReportError):
            log = logger.error if isinstance(exc, UnavailableError) else logger.warning
            log(
                f'Report request refused: {exc.code}',
                extra={
                    'event': 'report_request_refused',
                    'error_code': exc.code,
                    'view_action': getattr(self, 'action', None),
                }
            )
            metrics.exceptions_total.labels(exception_type=exc.__class__.__name__, location='reports_api').inc()
            return report_error_response(exc)
        return super().handle_exception(exc)


class ReportViewSet(ReportAPIViewMixin, viewsets.ViewSet):
    """
    Patient reports.

    Endpoints:
    - GET   /reports/{id}/                                  - Report
    - PATCH /reports/{id}/draft/                            - Edit a draft
    - POST  /reports/{id}/finalize/                         - Sign a draft
    - POST  /reports/{id}/ready/                            - Mark a signed report ready for submission
    - GET   /reports/{id}/versions/                         - Version history
    - GET   /reports/{id}/amendments/                       - Amendment requests
    - POST  /reports/{id}/amendments/                       - Request an amendment
    - GET   /reports/{id}/amendments/pending/               - Pending request, if any
    - POST  /reports/{id}/amendments/{amendment_id}/apply/  - Apply an approved request
    """

    def retrieve(self, request, pk=None):
        report = self.get_facade().get_report(pk)
        return Response(PatientReportSerializer(report).data)

    @action(detail=True, methods=['patch'], url_path='draft')
    def draft(self, request, pk=None):
        serializer = DraftUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        facade = self.get_facade()
        changes = facade.update_draft(pk, serializer.validated_data['changes'], request.actor)
        report = facade.get_report(pk)

        return Response({
            'report': PatientReportSerializer(report).data,
            'changes': [change.as_dict() for change in changes],
        })

    @action(detail=True, methods=['post'], url_path='finalize')
    def finalize(self, request, pk=None):
        report = self.get_facade().finalize_report(pk, request.actor)
        return Response(PatientReportSerializer(report).data)

    @action(detail=True, methods=['post'], url_path='ready')
    def ready(self, request, pk=None):
        report = self.get_facade().mark_ready_for_submission(pk, request.actor)
        return Response(PatientReportSerializer(report).data)

    @action(detail=True, methods=['get'], url_path='versions')
    def versions(self, request, pk=None):
        versions = self.get_facade().get_version_history(pk)
        return Response(ReportVersionSerializer(versions, many=True).data)

    @action(detail=True, methods=['get', 'post'], url_path='amendments')
    def amendments(self, request, pk=None):
        facade = self.get_facade()

        if request.method == 'GET':
            amendments = facade.list_amendments(pk)
            return Response(AmendmentRequestSerializer(amendments, many=True).data)

        serializer = AmendmentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        amendment = facade.create_amendment(
            pk,
            data['reason'],
            data['changes'],
            request.actor,
            deadline=data.get('deadline'),
            supersede=data.get('supersede', False),
        )
        return Response(AmendmentRequestSerializer(amendment).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['get'], url_path='amendments/pending')
    def pending_amendment(self, request, pk=None):
        amendment = self.get_facade().get_pending_amendment(pk)
        data = AmendmentRequestSerializer(amendment).data if amendment else None
        return Response({'amendment': data})

    @action(detail=True, methods=['post'], url_path=r'amendments/(?P<amendment_id>[^/.]+)/apply')
    def apply_amendment(self, request, pk=None, amendment_id=None):
        facade = self.get_facade()
        report = facade.apply_amendment(pk, amendment_id, request.actor)
        amendment = facade.get_amendment(amendment_id)

        return Response({
            'report': PatientReportSerializer(report).data,
            'amendment': AmendmentRequestSerializer(amendment).data,
        })


class AmendmentViewSet(ReportAPIViewMixin, viewsets.ViewSet):
    """
    Amendment review queue.

    Endpoints:
    - GET  /amendments/               - Pending requests (?overdue=true for past deadline)
    - GET  /amendments/{id}/          - One request
    - POST /amendments/{id}/review/   - Approve or reject
    """

    def list(self, request):
        overdue_only = request.query_params.get('overdue', '').lower() in ('1', 'true', 'yes')
        amendments = self.get_facade().list_pending_amendments(overdue_only=overdue_only)
        return Response(AmendmentRequestSerializer(amendments, many=True).data)

    def retrieve(self, request, pk=None):
        amendment = self.get_facade().get_amendment(pk)
        return Response(AmendmentRequestSerializer(amendment).data)

    @action(detail=True, methods=['post'], url_path='review')
    def review(self, request, pk=None):
        serializer = AmendmentReviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        amendment = self.get_facade().review_amendment(
            pk,
            serializer.validated_data['decision'],
            serializer.validated_data.get('comments'),
            request.actor,
        )
        return Response(AmendmentRequestSerializer(amendment).data)
