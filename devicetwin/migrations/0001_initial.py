from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="DeviceMeta",
            fields=[
                (
                    "key",
                    models.CharField(
                        db_column="key",
                        max_length=256,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "value",
                    models.TextField(blank=True, db_column="value", default=""),
                ),
                (
                    "type",
                    models.CharField(
                        blank=True,
                        db_column="type",
                        db_index=True,
                        default="",
                        max_length=256,
                    ),
                ),
            ],
            options={
                "db_table": "device_meta",
                "ordering": ["key"],
            },
        ),
    ]
