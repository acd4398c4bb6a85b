from rest_framework import serializers

from apps.engineers.models import Engineer, EngineerWorkingDay


class EngineerSerializer(serializers.ModelSerializer):
    open_jobs = serializers.IntegerField(read_only=True, required=False)

    class Meta:
        model = Engineer
        fields = [
            "id",
            "user",
            "name",
            "email",
            "region",
            "base_postcode",
            "availability",
            "max_jobs_per_day",
            "open_jobs",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "open_jobs", "created_at", "updated_at"]

    def validate_max_jobs_per_day(self, value):
        if value < 1:
            raise serializers.ValidationError("An engineer must be able to take at least one job per day.")
        return value


class EngineerWorkingDaySerializer(serializers.ModelSerializer):
    class Meta:
        model = EngineerWorkingDay
        fields = ["day_of_week", "start_time", "end_time", "is_available"]

    def validate(self, attrs):
        start = attrs.get("start_time", EngineerWorkingDay._meta.get_field("start_time").default)
        end = attrs.get("end_time", EngineerWorkingDay._meta.get_field("end_time").default)
        if end <= start:
            raise serializers.ValidationError({"end_time": "The working day must end after it starts."})
        return attrs


class WorkingWeekSerializer(serializers.Serializer):
    days = EngineerWorkingDaySerializer(many=True)

    def validate_days(self, value):
        weekdays = [entry["day_of_week"] for entry in value]
        if len(weekdays) != len(set(weekdays)):
            raise serializers.ValidationError("Each weekday can appear only once.")
        return value
