from django.contrib import admin

from apps.engineers.models import Engineer, EngineerWorkingDay


class EngineerWorkingDayInline(admin.TabularInline):
    model = EngineerWorkingDay
    extra = 0


@admin.register(Engineer)
class EngineerAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "region", "base_postcode", "availability", "max_jobs_per_day")
    list_filter = ("availability", "region")
    search_fields = ("name", "email", "base_postcode")
    autocomplete_fields = ("user",)
    inlines = [EngineerWorkingDayInline]
