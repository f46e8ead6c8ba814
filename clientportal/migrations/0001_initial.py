import django.contrib.auth.models
import django.contrib.auth.validators
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                (
                    'is_superuser',
                    models.BooleanField(
                        default=False,
                        help_text='Designates that this user has all permissions without explicitly assigning them.',
                        verbose_name='superuser status',
                    ),
                ),
                (
                    'username',
                    models.CharField(
                        error_messages={'unique': 'A user with that username already exists.'},
                        help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.',
                        max_length=150,
                        unique=True,
                        validators=[django.contrib.auth.validators.UnicodeUsernameValidator()],
                        verbose_name='username',
                    ),
                ),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('email', models.EmailField(blank=True, max_length=254, verbose_name='email address')),
                (
                    'is_staff',
                    models.BooleanField(
                        default=False,
                        help_text='Designates whether the user can log into this admin site.',
                        verbose_name='staff status',
                    ),
                ),
                (
                    'is_active',
                    models.BooleanField(
                        default=True,
                        help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.',
                        verbose_name='active',
                    ),
                ),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('phone', models.CharField(blank=True, max_length=50)),
                (
                    'role',
                    models.CharField(
                        choices=[('client', 'Client'), ('admin', 'Admin')],
                        default='client',
                        max_length=16,
                    ),
                ),
                (
                    'groups',
                    models.ManyToManyField(
                        blank=True,
                        help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.',
                        related_name='user_set',
                        related_query_name='user',
                        to='auth.group',
                        verbose_name='groups',
                    ),
                ),
                (
                    'user_permissions',
                    models.ManyToManyField(
                        blank=True,
                        help_text='Specific permissions for this user.',
                        related_name='user_set',
                        related_query_name='user',
                        to='auth.permission',
                        verbose_name='user permissions',
                    ),
                ),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'abstract': False,
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='Project',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('title', models.CharField(max_length=255)),
                ('description', models.TextField()),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('pending_review', 'Pending Review'),
                            ('awaiting_dp', 'Awaiting Down Payment'),
                            ('in_progress', 'In Progress'),
                            ('under_review', 'Under Review'),
                            ('approved', 'Approved'),
                            ('awaiting_handover', 'Awaiting Handover'),
                            ('completed', 'Completed'),
                            ('rejected', 'Rejected'),
                        ],
                        default='pending_review',
                        max_length=32,
                    ),
                ),
                ('quote', models.PositiveBigIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                (
                    'timeline',
                    models.PositiveIntegerField(
                        help_text='Delivery timeline in weeks.',
                        validators=[django.core.validators.MinValueValidator(1)],
                    ),
                ),
                (
                    'payment_status',
                    models.PositiveSmallIntegerField(
                        default=0,
                        help_text='Percentage of the quote paid (0-100).',
                        validators=[django.core.validators.MaxValueValidator(100)],
                    ),
                ),
                (
                    'progress',
                    models.PositiveSmallIntegerField(default=0, validators=[django.core.validators.MaxValueValidator(100)]),
                ),
                ('admin_feedback', models.TextField(blank=True)),
                ('attachments', models.JSONField(blank=True, default=list)),
                ('handover_notes', models.TextField(blank=True)),
                ('version', models.PositiveIntegerField(default=0)),
                (
                    'client',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='projects',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='project_status_idx'),
                    models.Index(fields=['client', 'status'], name='project_client_status_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('payment_status__lte', 100)), name='project_payment_status_lte_100'),
                    models.CheckConstraint(condition=models.Q(('progress__lte', 100)), name='project_progress_lte_100'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Activity',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                (
                    'type',
                    models.CharField(
                        choices=[
                            ('commit', 'Commit'),
                            ('payment', 'Payment'),
                            ('feedback', 'Feedback'),
                            ('quotation', 'Quotation'),
                            ('status_change', 'Status Change'),
                            ('milestone', 'Milestone'),
                            ('review', 'Review'),
                            ('admin_override', 'Admin Override'),
                        ],
                        max_length=32,
                    ),
                ),
                ('content', models.TextField()),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    'actor',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='activities',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='activities',
                        to='clientportal.project',
                    ),
                ),
            ],
            options={
                'verbose_name_plural': 'activities',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['project', 'created_at'], name='activity_project_created_idx'),
                    models.Index(fields=['type', 'created_at'], name='activity_type_created_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Feedback',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                (
                    'kind',
                    models.CharField(
                        choices=[
                            ('general', 'General'),
                            ('review', 'Review'),
                            ('change_request', 'Change Request'),
                            ('rejection', 'Rejection'),
                        ],
                        default='general',
                        max_length=32,
                    ),
                ),
                ('content', models.TextField()),
                (
                    'author',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='feedback_given',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='feedback',
                        to='clientportal.project',
                    ),
                ),
            ],
            options={
                'verbose_name_plural': 'feedback',
                'ordering': ['created_at'],
            },
        ),
        migrations.CreateModel(
            name='Invoice',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('invoice_number', models.CharField(blank=True, max_length=50, unique=True)),
                ('title', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True)),
                ('amount', models.PositiveBigIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('draft', 'Draft'),
                            ('sent', 'Sent'),
                            ('paid', 'Paid'),
                            ('partial', 'Partially Paid'),
                            ('overdue', 'Overdue'),
                            ('cancelled', 'Cancelled'),
                        ],
                        default='draft',
                        max_length=16,
                    ),
                ),
                (
                    'invoice_type',
                    models.CharField(
                        choices=[
                            ('dp', 'Down Payment'),
                            ('final', 'Final Payment'),
                            ('milestone', 'Milestone'),
                            ('full', 'Full Payment'),
                        ],
                        default='full',
                        max_length=16,
                    ),
                ),
                ('due_date', models.DateField(blank=True, null=True)),
                ('issue_date', models.DateField(default=django.utils.timezone.localdate)),
                ('paid_date', models.DateTimeField(blank=True, null=True)),
                ('paid_amount', models.PositiveBigIntegerField(default=0)),
                ('notes', models.TextField(blank=True)),
                ('terms_and_conditions', models.TextField(blank=True)),
                (
                    'client',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='invoices',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='invoices',
                        to='clientportal.project',
                    ),
                ),
            ],
            options={
                'ordering': ['-issue_date', '-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'due_date'], name='invoice_status_due_idx'),
                    models.Index(fields=['project', 'status'], name='invoice_project_status_idx'),
                    models.Index(fields=['client', 'status'], name='invoice_client_status_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(('paid_amount__lte', models.F('amount'))),
                        name='invoice_paid_amount_lte_amount',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='Milestone',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('title', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True)),
                ('due_date', models.DateField(blank=True, null=True)),
                ('completed', models.BooleanField(default=False)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                (
                    'progress',
                    models.PositiveSmallIntegerField(default=0, validators=[django.core.validators.MaxValueValidator(100)]),
                ),
                ('order', models.PositiveIntegerField(default=0)),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='milestones',
                        to='clientportal.project',
                    ),
                ),
            ],
            options={
                'ordering': ['order', 'id'],
                'indexes': [
                    models.Index(fields=['project', 'order'], name='milestone_project_order_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(('completed', True), ('completed_at__isnull', False)),
                            models.Q(('completed', False), ('completed_at__isnull', True)),
                            _connector='OR',
                        ),
                        name='milestone_completed_at_matches_completed',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='Notification',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('category', models.CharField(blank=True, max_length=50)),
                ('title', models.CharField(blank=True, max_length=255)),
                ('message', models.CharField(max_length=500)),
                ('is_read', models.BooleanField(default=False)),
                (
                    'project',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='notifications',
                        to='clientportal.project',
                    ),
                ),
                (
                    'user',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='notifications',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                'ordering': ['is_read', '-created_at'],
                'indexes': [
                    models.Index(fields=['user', 'is_read', 'created_at'], name='notification_user_read_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('amount', models.PositiveBigIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                (
                    'method',
                    models.CharField(
                        choices=[
                            ('bank_transfer', 'Bank Transfer'),
                            ('paypal', 'PayPal'),
                            ('card', 'Card'),
                            ('cash', 'Cash'),
                            ('other', 'Other'),
                        ],
                        default='bank_transfer',
                        max_length=32,
                    ),
                ),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('pending', 'Pending'),
                            ('success', 'Success'),
                            ('failed', 'Failed'),
                            ('cancelled', 'Cancelled'),
                        ],
                        default='pending',
                        max_length=16,
                    ),
                ),
                ('transaction_id', models.CharField(blank=True, max_length=100)),
                ('payment_proof_url', models.CharField(blank=True, max_length=500)),
                ('notes', models.TextField(blank=True)),
                ('payment_date', models.DateTimeField(default=django.utils.timezone.now)),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                (
                    'client',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='payments',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'invoice',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='payments',
                        to='clientportal.invoice',
                    ),
                ),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='payments',
                        to='clientportal.project',
                    ),
                ),
                (
                    'verified_by',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='payments_verified',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                'ordering': ['-payment_date'],
                'indexes': [
                    models.Index(fields=['invoice', 'status'], name='payment_invoice_status_idx'),
                    models.Index(fields=['status', 'payment_date'], name='payment_status_date_idx'),
                ],
            },
        ),
    ]
