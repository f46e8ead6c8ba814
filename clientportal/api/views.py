from __future__ import annotations

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from clientportal import ledger, lifecycle, milestones
from clientportal.activity import project_history
from clientportal.api.access import visible_for_user, visible_projects_for_user
from clientportal.api.permissions import ProjectParticipantPermission, RolePermission
from clientportal.api.serializers import (
    ActivitySerializer,
    ApproveQuoteSerializer,
    CancelInvoiceSerializer,
    FeedbackCreateSerializer,
    FeedbackSerializer,
    FinalizeSerializer,
    InvoiceCreateSerializer,
    InvoiceSerializer,
    MilestoneCreateSerializer,
    MilestoneSerializer,
    MilestoneUpdateSerializer,
    NotificationSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    PaySerializer,
    ProjectCreateSerializer,
    ProjectSerializer,
    ProjectUpdateSerializer,
    RejectSerializer,
    RequestChangesSerializer,
    ReviewSerializer,
    UserSerializer,
    VerifyPaymentSerializer,
)
from clientportal.models import Activity, Invoice, Milestone, Notification, Payment, Project, User

ADMIN_ONLY = (User.Roles.ADMIN,)


class CustomTokenObtainPairSerializer(TokenObtainPairSerializer):
    def validate(self, attrs):
        username = attrs.get(self.username_field)
        if username and '@' in username:
            user = User.objects.filter(email__iexact=username).first()
            if user:
                attrs[self.username_field] = user.get_username()
        return super().validate(attrs)


class CustomTokenObtainPairView(TokenObtainPairView):
    permission_classes = (AllowAny,)
    serializer_class = CustomTokenObtainPairSerializer


class CustomTokenRefreshView(TokenRefreshView):
    permission_classes = (AllowAny,)


class MeView(APIView):
    def get(self, request):
        unread = Notification.objects.filter(user=request.user, is_read=False).count()
        return Response({
            'user': UserSerializer(request.user).data,
            'unread_notifications': unread,
        })


class RoleMappedMixin:
    permission_classes = (RolePermission, ProjectParticipantPermission)
    role_map: dict[str, tuple[str, ...] | None] | None = None

    def get_permissions(self):
        if self.role_map:
            roles = self.role_map.get(self.action)
            self.allowed_roles = roles
        return super().get_permissions()


def _payload(serializer_class, request):
    serializer = serializer_class(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = dict(serializer.validated_data)
    version = data.pop('version', None)
    return data, version


class ProjectViewSet(
    RoleMappedMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = ProjectSerializer
    search_fields = ('title', 'description', 'client__username')
    ordering_fields = ('created_at', 'updated_at', 'status', 'quote', 'progress')
    filterset_fields = ('status', 'client')
    role_map = {
        'approve_quote': ADMIN_ONLY,
        'finalize': ADMIN_ONLY,
    }

    def get_queryset(self):
        qs = Project.objects.select_related('client').order_by('-created_at')
        return visible_projects_for_user(self.request.user, qs)

    def _respond(self, project, status_code=status.HTTP_200_OK):
        return Response(ProjectSerializer(project).data, status=status_code)

    def create(self, request):
        data, _ = _payload(ProjectCreateSerializer, request)
        project = lifecycle.create_project(request.user, **data)
        return self._respond(project, status.HTTP_201_CREATED)

    def partial_update(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(ProjectUpdateSerializer, request)
        project = lifecycle.update_project(project, request.user, expected_version=version, **data)
        return self._respond(project)

    @action(detail=True, methods=['post'], url_path='approve-quote')
    def approve_quote(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(ApproveQuoteSerializer, request)
        project = lifecycle.approve_quote(project, request.user, expected_version=version, **data)
        return self._respond(project)

    @action(detail=True, methods=['post'])
    def pay(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(PaySerializer, request)
        project = lifecycle.record_payment_progress(
            project, request.user, data['payment_status'], expected_version=version
        )
        return self._respond(project)

    @action(detail=True, methods=['post'], url_path='submit-review')
    def submit_review(self, request, pk=None):
        project = self.get_object()
        _, version = _payload(ReviewSerializer, request)
        project = lifecycle.submit_for_review(project, request.user, expected_version=version)
        return self._respond(project)

    @action(detail=True, methods=['post'])
    def accept(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(ReviewSerializer, request)
        project = lifecycle.accept_review(
            project, request.user, feedback=data.get('feedback', ''), expected_version=version
        )
        return self._respond(project)

    @action(detail=True, methods=['post'], url_path='request-changes')
    def request_changes(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(RequestChangesSerializer, request)
        project = lifecycle.request_changes(project, request.user, data['message'], expected_version=version)
        return self._respond(project)

    @action(detail=True, methods=['post'])
    def reject(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(RejectSerializer, request)
        project = lifecycle.reject_project(project, request.user, data['reason'], expected_version=version)
        return self._respond(project)

    @action(detail=True, methods=['post'])
    def finalize(self, request, pk=None):
        project = self.get_object()
        data, version = _payload(FinalizeSerializer, request)
        project = lifecycle.finalize_delivery(
            project,
            request.user,
            handover_notes=data.get('handover_notes', ''),
            attachments=data.get('attachments'),
            expected_version=version,
        )
        return self._respond(project)

    @action(detail=True, methods=['get'])
    def activities(self, request, pk=None):
        project = self.get_object()
        return Response(ActivitySerializer(project_history(project), many=True).data)

    @action(detail=True, methods=['get', 'post'])
    def feedback(self, request, pk=None):
        project = self.get_object()
        if request.method == 'POST':
            data, _ = _payload(FeedbackCreateSerializer, request)
            entry = lifecycle.post_feedback(project, request.user, data['content'])
            return Response(FeedbackSerializer(entry).data, status=status.HTTP_201_CREATED)
        entries = project.feedback.select_related('author').order_by('created_at')
        return Response(FeedbackSerializer(entries, many=True).data)

    @action(detail=True, methods=['get', 'post'], url_path='milestones')
    def milestone_list(self, request, pk=None):
        project = self.get_object()
        if request.method == 'POST':
            data, _ = _payload(MilestoneCreateSerializer, request)
            milestone = milestones.create_milestone(project, request.user, **data)
            return Response(MilestoneSerializer(milestone).data, status=status.HTTP_201_CREATED)
        return Response(MilestoneSerializer(project.milestones.order_by('order', 'id'), many=True).data)

    @action(detail=True, methods=['get'])
    def invoices(self, request, pk=None):
        project = self.get_object()
        return Response(InvoiceSerializer(project.invoices.order_by('-issue_date', '-created_at'), many=True).data)


class MilestoneViewSet(
    mixins.RetrieveModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = MilestoneSerializer
    permission_classes = (RolePermission, ProjectParticipantPermission)

    def get_queryset(self):
        qs = Milestone.objects.select_related('project').order_by('order', 'id')
        return visible_for_user(self.request.user, qs)

    def partial_update(self, request, pk=None):
        milestone = self.get_object()
        data, _ = _payload(MilestoneUpdateSerializer, request)
        milestone = milestones.update_milestone(milestone, request.user, **data)
        return Response(MilestoneSerializer(milestone).data)

    def perform_destroy(self, instance):
        milestones.delete_milestone(instance, self.request.user)


class InvoiceViewSet(
    RoleMappedMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = InvoiceSerializer
    search_fields = ('invoice_number', 'title', 'project__title')
    ordering_fields = ('issue_date', 'due_date', 'amount', 'status')
    filterset_fields = ('status', 'invoice_type', 'project')
    role_map = {
        'create': ADMIN_ONLY,
        'send': ADMIN_ONLY,
        'cancel': ADMIN_ONLY,
    }

    def get_queryset(self):
        qs = Invoice.objects.select_related('project', 'client').order_by('-issue_date', '-created_at')
        return visible_for_user(self.request.user, qs)

    def create(self, request):
        data, _ = _payload(InvoiceCreateSerializer, request)
        project = data.pop('project')
        invoice = ledger.create_invoice(project, request.user, **data)
        return Response(InvoiceSerializer(invoice).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def send(self, request, pk=None):
        invoice = ledger.send_invoice(self.get_object(), request.user)
        return Response(InvoiceSerializer(invoice).data)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        invoice = self.get_object()
        data, _ = _payload(CancelInvoiceSerializer, request)
        invoice = ledger.cancel_invoice(invoice, request.user, reason=data['reason'])
        return Response(InvoiceSerializer(invoice).data)

    @action(detail=True, methods=['get', 'post'])
    def payments(self, request, pk=None):
        invoice = self.get_object()
        if request.method == 'POST':
            data, _ = _payload(PaymentCreateSerializer, request)
            payment = ledger.record_payment(invoice, request.user, **data)
            return Response(PaymentSerializer(payment).data, status=status.HTTP_201_CREATED)
        return Response(PaymentSerializer(invoice.payments.order_by('-payment_date'), many=True).data)


class PaymentViewSet(RoleMappedMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = PaymentSerializer
    filterset_fields = ('status', 'method', 'invoice', 'project')
    ordering_fields = ('payment_date', 'amount')
    role_map = {
        'verify': ADMIN_ONLY,
    }

    def get_queryset(self):
        qs = Payment.objects.select_related('invoice', 'project').order_by('-payment_date')
        return visible_for_user(self.request.user, qs)

    @action(detail=True, methods=['post'])
    def verify(self, request, pk=None):
        payment = self.get_object()
        data, _ = _payload(VerifyPaymentSerializer, request)
        payment = ledger.verify_payment(payment, request.user, approve=data['approve'], notes=data['notes'])
        return Response(PaymentSerializer(payment).data)


class ActivityViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = ActivitySerializer
    permission_classes = (RolePermission, ProjectParticipantPermission)
    filterset_fields = ('project', 'type')

    def get_queryset(self):
        qs = Activity.objects.select_related('actor').order_by('created_at', 'id')
        return visible_for_user(self.request.user, qs)


class NotificationViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = NotificationSerializer
    filterset_fields = ('is_read', 'category')

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user).order_by('is_read', '-created_at')

    @action(detail=True, methods=['post'], url_path='mark-read')
    def mark_read(self, request, pk=None):
        notification = self.get_object()
        notification.is_read = True
        notification.save(update_fields=['is_read', 'updated_at'])
        return Response(NotificationSerializer(notification).data)
