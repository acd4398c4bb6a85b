from django.contrib import admin

from apps.clients.models import Client, ClientBlockedDate


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ("full_name", "email", "phone", "postcode", "updated_at")
    search_fields = ("full_name", "email", "phone", "postcode")
    autocomplete_fields = ("user",)


@admin.register(ClientBlockedDate)
class ClientBlockedDateAdmin(admin.ModelAdmin):
    list_display = ("client", "blocked_date", "reason")
    list_filter = ("blocked_date",)
    search_fields = ("client__full_name", "client__email")
