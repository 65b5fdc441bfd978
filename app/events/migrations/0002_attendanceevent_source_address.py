import core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("events", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="attendanceevent",
            name="source_address",
            field=models.CharField(max_length=45, validators=[core.validators.validate_source_address]),
        ),
    ]
