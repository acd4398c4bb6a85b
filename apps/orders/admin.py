from django.contrib import admin

from apps.orders.models import CompletionChecklistItem, Order, OrderActivity, OrderPayment


class OrderPaymentInline(admin.TabularInline):
    model = OrderPayment
    extra = 0
    readonly_fields = ("stripe_session_id", "stripe_payment_intent_id", "paid_at", "created_at")


class ChecklistInline(admin.TabularInline):
    model = CompletionChecklistItem
    extra = 0


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "client", "status", "engineer_status", "engineer", "scheduled_install_date", "amount_paid", "total_amount")
    list_filter = ("status", "engineer_status", "manual_status_override")
    search_fields = ("order_number", "client__full_name", "client__email", "postcode")
    readonly_fields = ("order_number", "created_at", "updated_at")
    inlines = [OrderPaymentInline, ChecklistInline]


@admin.register(OrderActivity)
class OrderActivityAdmin(admin.ModelAdmin):
    list_display = ("created_at", "order", "activity_type", "description", "created_by")
    list_filter = ("activity_type",)
    search_fields = ("order__order_number", "description")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
