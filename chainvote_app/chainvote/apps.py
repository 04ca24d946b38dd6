from django.apps import AppConfig


class ChainVoteConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "chainvote"
    verbose_name = "Election ledger coordination"
