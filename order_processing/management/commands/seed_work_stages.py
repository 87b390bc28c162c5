from django.core.management.base import BaseCommand

from order_processing.models import WorkStage
from order_processing.signals import ensure_work_stages


class Command(BaseCommand):
    help = "Ensure the eight production work stages exist, optionally flagging mandatory handovers."

    def add_arguments(self, parser):
        parser.add_argument(
            "--mandatory-handover",
            nargs="*",
            default=None,
            metavar="CODE",
            help="Stage codes whose processing rows require a handover before leaving the stage.",
        )

    def handle(self, *args, **options):
        created = ensure_work_stages()
        codes = options.get("mandatory_handover")
        if codes is not None:
            unknown = set(codes) - set(WorkStage.objects.values_list("code", flat=True))
            if unknown:
                self.stderr.write(self.style.ERROR(f"Unknown stage codes: {', '.join(sorted(unknown))}"))
                return
            WorkStage.objects.update(mandatory_handover=False)
            WorkStage.objects.filter(code__in=codes).update(mandatory_handover=True)

        self.stdout.write(
            self.style.SUCCESS(
                f"{created} work stage(s) created, {WorkStage.objects.count()} in total"
            )
        )
