from django.db import models


class DeviceMeta(models.Model):
    """A single metadata item cached for a managed device."""

    key = models.CharField(max_length=256, primary_key=True, db_column="key")
    value = models.TextField(blank=True, default="", db_column="value")
    type = models.CharField(
        max_length=256, blank=True, default="", db_index=True, db_column="type"
    )

    class Meta:
        db_table = "device_meta"
        ordering = ["key"]

    def __str__(self) -> str:
        return f"{self.key} ({self.type})"

    def to_dict(self) -> dict:
        return {"key": self.key, "type": self.type, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceMeta":
        return cls(
            key=data["key"],
            type=data.get("type", ""),
            value=data.get("value", ""),
        )

    def field_values(self) -> dict:
        """Return every non-key column value, keyed by field name."""
        return {
            field.attname: getattr(self, field.attname)
            for field in self._meta.concrete_fields
            if not field.primary_key
        }
