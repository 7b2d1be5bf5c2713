from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CheckInLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=150)),
                ("surname", models.CharField(blank=True, max_length=150)),
                (
                    "status",
                    models.CharField(
                        choices=[("CHECK_IN", "Check-in"), ("CHECK_OUT", "Check-out")],
                        default="CHECK_IN",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["name", "surname", "created_at"],
                        name="checkin_log_person_idx",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="ScanEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(default="SCAN_FAIL", max_length=32)),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("NO_FACE", "No face"),
                            ("OUT_OF_ZONE", "Out of zone"),
                            ("TOO_FAR", "Too far"),
                            ("UNKNOWN_FACE", "Unknown face"),
                            ("LOW_CONFIDENCE", "Low confidence"),
                        ],
                        max_length=32,
                    ),
                ),
                ("message", models.CharField(blank=True, max_length=255)),
                ("best_match", models.CharField(blank=True, max_length=255, null=True)),
                ("distance", models.FloatField(blank=True, null=True)),
                ("source", models.CharField(default="checkin", max_length=32)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="FaceProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "encrypted_descriptor",
                    models.BinaryField(
                        blank=True,
                        help_text="Fernet-encrypted float64 face descriptor",
                        null=True,
                    ),
                ),
                ("enrolled_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="face_profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Face Profile",
                "verbose_name_plural": "Face Profiles",
                "ordering": ["user_id"],
            },
        ),
    ]
