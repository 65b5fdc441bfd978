import core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("devices", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="device",
            name="address",
            field=models.CharField(max_length=15, validators=[core.validators.validate_dotted_quad]),
        ),
    ]
