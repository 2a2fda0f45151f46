# src/engine/runner.py
"""
JobRunner: executes one job from PENDING to a terminal state.

Targets are processed strictly in resolution order. The cancellation token is
checked before every target, so a cancel request takes effect within one
target's processing time. Progress and the token are cleared on every exit
path.
"""
import logging
import os

from engine.config import Settings
from engine.errors import InvalidState
from engine.handlers import TARGET_ERROR, TARGET_OK, HandlerRegistry
from engine.job_store import JobStore, cancelled_message
from engine.models import JobKind, JobStatus
from engine.runtime import JobRuntimeRegistry
from engine.targets import TargetResolver
from utils.scripts_utils import merge_severity_counts, render_report, save_full_scan_results

TARGET_KEYS = ("targets", "asset_ids")


class JobCancelled(Exception):
    pass


class JobRunner:
    def __init__(self, store: JobStore, registry: JobRuntimeRegistry, resolver: TargetResolver,
                 handlers: HandlerRegistry, settings: Settings = None):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.handlers = handlers
        self.settings = settings or Settings()

    def run(self, job_id: str):
        token = self.registry.register(job_id)
        try:
            try:
                job = self.store.mark_running(job_id)
            except InvalidState as e:
                logging.info(f"[job_id={job_id}] Not started: {e}")
                return
            logging.info(f"[job_id={job_id}] Started {job['kind'].lower()} job ({job['subtype']}).")
            self._execute(job, token)
        finally:
            self.registry.clear(job_id)

    def _execute(self, job, token):
        job_id = job["job_id"]
        processed = 0
        try:
            configuration = job["configuration"]
            targets = self.resolver.resolve(configuration)
            self.store.set_targets_total(job_id, len(targets))
            handlers = self.handlers.for_job(job["kind"], job["subtype"])
            options = {k: v for k, v in configuration.items() if k not in TARGET_KEYS}

            findings = []
            severity_counts = {}
            target_status = {}
            total = len(targets)
            for index, target in enumerate(targets):
                if token.cancelled:
                    raise JobCancelled()
                target_findings, target_counts, status = self._process_target(job_id, target, handlers, options)
                findings.extend(target_findings)
                merge_severity_counts(severity_counts, target_counts)
                target_status[status] = target_status.get(status, 0) + 1
                processed = index + 1
                self.registry.set_progress(job_id, processed * 100 // total)

            if token.cancelled:
                raise JobCancelled()

            summary = {
                "total_findings": len(findings),
                "severity_counts": severity_counts,
                "targets_scanned": processed,
                "target_status": target_status,
            }
            result_file = self._save_results(job, findings, summary)
            summary["result_file"] = result_file
            finished = self.store.finish(
                job_id, JobStatus.COMPLETED.value,
                result_summary=summary, findings=findings,
                result_file=result_file, targets_processed=processed,
            )
            if finished["status"] == JobStatus.COMPLETED.value:
                logging.info(f"[job_id={job_id}] Completed job. stats={severity_counts}")
            else:
                # cancel request landed after the last target; drop the artifact
                if result_file and os.path.exists(result_file):
                    os.remove(result_file)
                logging.info(f"[job_id={job_id}] Job cancelled after {processed} targets.")
        except JobCancelled:
            self.store.finish(
                job_id, JobStatus.CANCELLED.value,
                error=cancelled_message(job["kind"]), targets_processed=processed,
            )
            logging.info(f"[job_id={job_id}] Job cancelled after {processed} targets.")
        except Exception as e:
            logging.error(f"[job_id={job_id}] Job failed: {e}")
            self.store.finish(job_id, JobStatus.FAILED.value, error=str(e), targets_processed=processed)

    def _process_target(self, job_id, target, handlers, options):
        findings = []
        counts = {}
        statuses = []
        for handler in handlers:
            try:
                result = handler.execute(target, options)
            except Exception as e:
                # a failing handler degrades the target, never the job
                logging.warning(f"[job_id={job_id}] Handler {handler.name} failed for {target.value}: {e}")
                findings.append({
                    "type": "error",
                    "severity": None,
                    "title": f"{handler.name} failed",
                    "description": str(e),
                    "target": target.value,
                    "asset_id": target.asset_id,
                })
                statuses.append(TARGET_ERROR)
                continue
            for finding in result.findings:
                finding.setdefault("target", target.value)
                if target.asset_id:
                    finding.setdefault("asset_id", target.asset_id)
            findings.extend(result.findings)
            merge_severity_counts(counts, result.severity_counts)
            statuses.append(result.status)
        status = next((s for s in statuses if s != TARGET_OK), TARGET_OK)
        return findings, counts, status

    def _save_results(self, job, findings, summary):
        if job["kind"] == JobKind.REPORT.value:
            fmt = job["configuration"].get("format", "pdf")
            path, size = render_report(
                findings, job["subtype"], fmt,
                base_dir=self.settings.reports_dir, job_id=job["job_id"],
            )
            summary["format"] = fmt
            summary["size"] = size
            return path
        return save_full_scan_results(
            {"job_id": job["job_id"], "scan_type": job["subtype"], "summary": summary, "findings": findings},
            base_dir=self.settings.scan_results_dir, job_id=job["job_id"],
        )
