import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Movie",
            fields=[
                ("tmdb_id", models.IntegerField(primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=500)),
                ("poster_url", models.URLField(blank=True, max_length=500, null=True)),
                ("release_year", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("description", models.TextField(blank=True, default="")),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="Rating",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("movie_id", models.IntegerField()),
                (
                    "pre_rating",
                    models.PositiveSmallIntegerField(
                        blank=True,
                        null=True,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(10),
                        ],
                    ),
                ),
                (
                    "post_rating",
                    models.PositiveSmallIntegerField(
                        blank=True,
                        null=True,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(10),
                        ],
                    ),
                ),
                (
                    "award_state",
                    models.CharField(
                        choices=[("none", "None"), ("pre_held", "Pre-rating held"), ("released", "Released")],
                        default="none",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ratings",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("user", "movie_id"), name="unique_rating_per_user_movie"),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("pre_rating__isnull", True),
                            models.Q(("pre_rating__gte", 1), ("pre_rating__lte", 10)),
                            _connector="OR",
                        ),
                        name="pre_rating_between_1_and_10",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("post_rating__isnull", True),
                            models.Q(("post_rating__gte", 1), ("post_rating__lte", 10)),
                            _connector="OR",
                        ),
                        name="post_rating_between_1_and_10",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PointsAccount",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("points_available", models.IntegerField(default=0)),
                ("points_on_hold", models.IntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="points_account",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("points_available__gte", 0)),
                        name="points_available_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("points_on_hold__gte", 0)),
                        name="points_on_hold_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PointsAward",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("movie_id", models.IntegerField()),
                (
                    "kind",
                    models.CharField(
                        choices=[("pre_hold", "Pre-rating hold"), ("release", "Release")],
                        max_length=16,
                    ),
                ),
                ("points_available_delta", models.IntegerField()),
                ("points_on_hold_delta", models.IntegerField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="points_awards",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "constraints": [
                    models.UniqueConstraint(fields=("user", "movie_id", "kind"), name="unique_award_per_transition"),
                ],
            },
        ),
    ]
