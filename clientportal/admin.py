from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from .models import Activity, Feedback, Invoice, Milestone, Notification, Payment, Project, User


@admin.register(User)
class UserAdmin(DjangoUserAdmin):
    fieldsets = DjangoUserAdmin.fieldsets + (('Role Info', {'fields': ('role', 'phone')}),)
    list_display = ('username', 'email', 'role', 'is_staff')
    list_filter = ('role', 'is_staff')


class MilestoneInline(admin.TabularInline):
    model = Milestone
    extra = 0
    fields = ('order', 'title', 'due_date', 'completed', 'completed_at')
    readonly_fields = ('completed_at',)


class ActivityInline(admin.TabularInline):
    model = Activity
    extra = 0
    fields = ('created_at', 'type', 'content', 'actor')
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('title', 'client', 'status', 'quote', 'timeline', 'payment_status', 'progress', 'created_at')
    list_filter = ('status',)
    search_fields = ('title', 'client__username', 'client__email')
    readonly_fields = ('version', 'created_at', 'updated_at')
    inlines = [MilestoneInline, ActivityInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'project', 'client', 'invoice_type', 'amount', 'paid_amount', 'status', 'due_date')
    list_filter = ('status', 'invoice_type')
    search_fields = ('invoice_number', 'title', 'project__title')
    readonly_fields = ('invoice_number', 'paid_amount', 'paid_date')


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('invoice', 'amount', 'method', 'status', 'payment_date', 'verified_by')
    list_filter = ('status', 'method')
    search_fields = ('invoice__invoice_number', 'transaction_id')


@admin.register(Activity)
class ActivityAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'project', 'type', 'content', 'actor')
    list_filter = ('type',)
    search_fields = ('content', 'project__title')

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Feedback)
class FeedbackAdmin(admin.ModelAdmin):
    list_display = ('project', 'kind', 'author', 'created_at')
    list_filter = ('kind',)


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('user', 'category', 'title', 'is_read', 'created_at')
    list_filter = ('is_read', 'category')
