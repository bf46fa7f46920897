from django.apps import AppConfig


class DeviceTwinConfig(AppConfig):
    name = "devicetwin"
    verbose_name = "Device twin metadata"
