from __future__ import annotations

from rest_framework import serializers

from clientportal.lifecycle import allowed_targets
from clientportal.models import Activity, Feedback, Invoice, Milestone, Notification, Payment, Project, User


class UserSummarySerializer(serializers.ModelSerializer):
    full_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ('id', 'username', 'full_name', 'email', 'role')

    def get_full_name(self, obj):
        return obj.get_full_name() or obj.username


class UserSerializer(UserSummarySerializer):
    is_admin = serializers.BooleanField(read_only=True)

    class Meta(UserSummarySerializer.Meta):
        fields = UserSummarySerializer.Meta.fields + ('first_name', 'last_name', 'phone', 'is_admin')


class ProjectSerializer(serializers.ModelSerializer):
    client_detail = UserSummarySerializer(source='client', read_only=True)
    status_display = serializers.CharField(source='get_status_display', read_only=True)
    allowed_transitions = serializers.SerializerMethodField()

    class Meta:
        model = Project
        fields = (
            'id',
            'client',
            'client_detail',
            'title',
            'description',
            'status',
            'status_display',
            'allowed_transitions',
            'quote',
            'timeline',
            'payment_status',
            'progress',
            'admin_feedback',
            'attachments',
            'handover_notes',
            'version',
            'created_at',
            'updated_at',
        )
        read_only_fields = fields

    def get_allowed_transitions(self, obj):
        return allowed_targets(obj.status)


class ProjectCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    description = serializers.CharField()
    quote = serializers.IntegerField(min_value=1)
    timeline = serializers.IntegerField(min_value=1)
    attachments = serializers.ListField(child=serializers.CharField(max_length=500), required=False)


class VersionedSerializer(serializers.Serializer):
    version = serializers.IntegerField(min_value=0, required=False)


class ProjectUpdateSerializer(VersionedSerializer):
    title = serializers.CharField(max_length=255, required=False)
    description = serializers.CharField(required=False)
    attachments = serializers.ListField(child=serializers.CharField(max_length=500), required=False)
    status = serializers.ChoiceField(choices=Project.Status.choices, required=False)
    quote = serializers.IntegerField(min_value=1, required=False)
    timeline = serializers.IntegerField(min_value=1, required=False)
    payment_status = serializers.IntegerField(min_value=0, max_value=100, required=False)
    progress = serializers.IntegerField(min_value=0, max_value=100, required=False)
    admin_feedback = serializers.CharField(required=False, allow_blank=True)
    handover_notes = serializers.CharField(required=False, allow_blank=True)


class ApproveQuoteSerializer(VersionedSerializer):
    quote = serializers.IntegerField(min_value=1, required=False)
    timeline = serializers.IntegerField(min_value=1, required=False)


class PaySerializer(VersionedSerializer):
    payment_status = serializers.IntegerField(min_value=0, max_value=100)


class ReviewSerializer(VersionedSerializer):
    feedback = serializers.CharField(required=False, allow_blank=True)


class RequestChangesSerializer(VersionedSerializer):
    message = serializers.CharField(required=False, allow_blank=True, default='')


class RejectSerializer(VersionedSerializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class FinalizeSerializer(VersionedSerializer):
    handover_notes = serializers.CharField(required=False, allow_blank=True, default='')
    attachments = serializers.ListField(child=serializers.CharField(max_length=500), required=False)


class MilestoneSerializer(serializers.ModelSerializer):
    class Meta:
        model = Milestone
        fields = (
            'id',
            'project',
            'title',
            'description',
            'due_date',
            'completed',
            'completed_at',
            'progress',
            'order',
            'created_at',
            'updated_at',
        )
        read_only_fields = fields


class MilestoneCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    due_date = serializers.DateField(required=False, allow_null=True)


class MilestoneUpdateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    due_date = serializers.DateField(required=False, allow_null=True)
    order = serializers.IntegerField(min_value=0, required=False)
    progress = serializers.IntegerField(min_value=0, max_value=100, required=False)
    completed = serializers.BooleanField(required=False)


class ActivitySerializer(serializers.ModelSerializer):
    actor_detail = UserSummarySerializer(source='actor', read_only=True)

    class Meta:
        model = Activity
        fields = ('id', 'project', 'type', 'content', 'actor', 'actor_detail', 'created_at')
        read_only_fields = fields


class FeedbackSerializer(serializers.ModelSerializer):
    author_detail = UserSummarySerializer(source='author', read_only=True)

    class Meta:
        model = Feedback
        fields = ('id', 'project', 'author', 'author_detail', 'kind', 'content', 'created_at')
        read_only_fields = fields


class FeedbackCreateSerializer(serializers.Serializer):
    content = serializers.CharField()


class InvoiceSerializer(serializers.ModelSerializer):
    amount_due = serializers.IntegerField(read_only=True)
    status_display = serializers.CharField(source='get_status_display', read_only=True)

    class Meta:
        model = Invoice
        fields = (
            'id',
            'project',
            'client',
            'invoice_number',
            'title',
            'description',
            'amount',
            'paid_amount',
            'amount_due',
            'status',
            'status_display',
            'invoice_type',
            'due_date',
            'issue_date',
            'paid_date',
            'notes',
            'terms_and_conditions',
            'created_at',
            'updated_at',
        )
        read_only_fields = fields


class InvoiceCreateSerializer(serializers.Serializer):
    project = serializers.PrimaryKeyRelatedField(queryset=Project.objects.all())
    title = serializers.CharField(max_length=255)
    amount = serializers.IntegerField(min_value=1)
    invoice_type = serializers.ChoiceField(choices=Invoice.Type.choices, default=Invoice.Type.FULL)
    due_date = serializers.DateField(required=False, allow_null=True)
    issue_date = serializers.DateField(required=False, allow_null=True)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    terms_and_conditions = serializers.CharField(required=False, allow_blank=True, default='')
    send = serializers.BooleanField(required=False, default=False)


class CancelInvoiceSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class PaymentSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source='invoice.invoice_number', read_only=True)

    class Meta:
        model = Payment
        fields = (
            'id',
            'invoice',
            'invoice_number',
            'project',
            'client',
            'amount',
            'method',
            'status',
            'transaction_id',
            'payment_proof_url',
            'notes',
            'payment_date',
            'verified_by',
            'verified_at',
        )
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    amount = serializers.IntegerField(min_value=1)
    method = serializers.ChoiceField(choices=Payment.Method.choices, default=Payment.Method.BANK_TRANSFER)
    transaction_id = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    payment_proof_url = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class VerifyPaymentSerializer(serializers.Serializer):
    approve = serializers.BooleanField(default=True)
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = ('id', 'user', 'project', 'category', 'title', 'message', 'is_read', 'created_at')
        read_only_fields = fields
