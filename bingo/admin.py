"""
Registro: Django admin registration.
Privacy: phones and id cards are masked in lists; full data only in detail.
"""

from django.contrib import admin

from .models import (
    BingoTable,
    Campaign,
    CampaignRecipientLog,
    Canton,
    Neighborhood,
    Participant,
    Province,
    SystemLog,
)
from .services.transport import mask_phone


@admin.register(Province)
class ProvinceAdmin(admin.ModelAdmin):
    list_display = ['id', 'name']
    search_fields = ['name']


@admin.register(Canton)
class CantonAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'province']
    list_filter = ['province']
    search_fields = ['name']


@admin.register(Neighborhood)
class NeighborhoodAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'canton']
    list_filter = ['canton__province']
    search_fields = ['name']


@admin.register(BingoTable)
class BingoTableAdmin(admin.ModelAdmin):
    list_display = ['code', 'delivered', 'manual_registration', 'ocr_validated', 'ocr_confidence', 'updated_at']
    list_filter = ['delivered', 'manual_registration', 'ocr_validated']
    search_fields = ['code']
    readonly_fields = ['created_at', 'updated_at', 'ocr_keywords']


@admin.register(Participant)
class ParticipantAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'first_name', 'last_name', 'masked_phone', 'masked_id_card',
        'phone_verified', 'assigned_table', 'province', 'created_at',
    ]
    list_filter = ['phone_verified', 'province']
    search_fields = ['first_name', 'last_name', 'phone', 'id_card']
    readonly_fields = ['otp_code', 'otp_expires_at', 'created_at', 'updated_at']
    raw_id_fields = ['assigned_table']
    date_hierarchy = 'created_at'

    def masked_phone(self, obj):
        return mask_phone(obj.phone)
    masked_phone.short_description = "Phone"

    def masked_id_card(self, obj):
        value = obj.id_card or ""
        if len(value) < 4:
            return "••••"
        return "••••" + value[-3:]
    masked_id_card.short_description = "ID card"


class CampaignRecipientLogInline(admin.TabularInline):
    model = CampaignRecipientLog
    extra = 0
    fields = ['phone', 'first_name', 'last_name', 'status', 'error_message', 'sent_at']
    readonly_fields = fields
    max_num = 50

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = ['name', 'status', 'total_recipients', 'interval_minutes', 'max_messages_per_hour', 'created_at']
    list_filter = ['status']
    search_fields = ['name']
    readonly_fields = ['status', 'total_recipients', 'cohort_filters', 'created_at', 'started_at', 'completed_at']
    inlines = [CampaignRecipientLogInline]


@admin.register(CampaignRecipientLog)
class CampaignRecipientLogAdmin(admin.ModelAdmin):
    list_display = ['campaign', 'masked_phone', 'status', 'sent_at']
    list_filter = ['status', 'campaign']
    readonly_fields = ['campaign', 'user', 'phone', 'first_name', 'last_name', 'status', 'error_message', 'sent_at']

    def masked_phone(self, obj):
        return mask_phone(obj.phone)
    masked_phone.short_description = "Phone"

    def has_add_permission(self, request):
        return False


@admin.register(SystemLog)
class SystemLogAdmin(admin.ModelAdmin):
    list_display = ['created_at', 'level', 'category', 'message']
    list_filter = ['level', 'category']
    search_fields = ['message']
    readonly_fields = ['level', 'category', 'message', 'metadata', 'created_at']

    def has_add_permission(self, request):
        return False
