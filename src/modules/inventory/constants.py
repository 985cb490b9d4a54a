from django.db import models


class SkuStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    INACTIVE = "INACTIVE", "Inactive"


class LedgerOperation(models.TextChoices):
    RESERVE = "RESERVE", "Reserve"
    FINALIZE = "FINALIZE", "Finalize"
    RELEASE = "RELEASE", "Release"
    RESTOCK = "RESTOCK", "Restock"
