# shipline/pipeline/stages/command.py
"""
Shell-command stage built from a StageSpec.

Execution order inside a stage: resolve secrets, build the environment,
run the command under the retry policy, check the output contract, then
enforce the quality gate.
"""

import logging
import time
from collections.abc import Iterable
from typing import Any

from shipline.config.schema import ShiplineConfig
from shipline.errors import (
    InputResolutionError,
    OutputContractError,
    QualityGateError,
    SecretStoreError,
    StageCommandError,
    StageError,
    StageTimeoutError,
)
from shipline.pipeline.definition import RetryPolicy, StageSpec, coerce_output
from shipline.pipeline.executor import CommandExecutor, CommandResult
from shipline.pipeline.retry import stage_retrying
from shipline.pipeline.stages.base import (
    PipelineStage,
    StageContext,
    StageResult,
    StageStatus,
    env_key,
)

logger = logging.getLogger(__name__)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class CommandStage(PipelineStage):
    """A pipeline stage that runs a shell command."""

    def __init__(
        self,
        spec: StageSpec,
        executor: CommandExecutor,
        config: ShiplineConfig | None = None,
    ) -> None:
        self._spec = spec
        self._executor = executor
        self._config = config or ShiplineConfig()

    @property
    def spec(self) -> StageSpec:
        return self._spec

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def needs(self) -> list[str]:
        return list(self._spec.needs)

    @property
    def consumes(self) -> set[str]:
        return {stage for stage, _ in self._spec.input_refs().values()}

    @property
    def allow_failure(self) -> bool:
        return self._spec.allow_failure

    @property
    def has_rollback(self) -> bool:
        return bool(self._spec.rollback)

    @property
    def retry_policy(self) -> RetryPolicy:
        if self._spec.retry is not None:
            return self._spec.retry
        defaults = self._config.retry
        return RetryPolicy(
            attempts=defaults.max_attempts,
            backoff=defaults.backoff,
            max_backoff=defaults.max_backoff,
        )

    @property
    def timeout(self) -> int:
        return self._spec.timeout or self._config.executor.default_timeout

    def build_env(self, context: StageContext, strict: bool = True) -> dict[str, str]:
        """
        Build the stage environment (without secrets).

        Precedence (later wins): pipeline env, stage env, inputs, SHIPLINE_* vars.

        Args:
            context: Run context
            strict: Raise on unresolvable inputs (False skips them, for rollback)

        Raises:
            InputResolutionError: If strict and an input's upstream output is missing
        """
        env = {**context.pipeline_env, **self._spec.env}

        for env_name, (stage, output) in self._spec.input_refs().items():
            upstream = context.upstream_outputs.get(stage)
            if upstream is None or output not in upstream:
                if strict:
                    raise InputResolutionError(
                        f"Input {env_name} needs output '{output}' of stage '{stage}', "
                        "which is not available"
                    )
                continue
            env[env_name] = _env_value(upstream[output])

        env["SHIPLINE_RUN_ID"] = context.run_id
        env["SHIPLINE_STAGE"] = self.name
        return env

    def _resolve_secrets(self, context: StageContext) -> dict[str, str]:
        if not self._spec.secrets:
            return {}
        if context.secrets is None:
            raise SecretStoreError(
                f"Stage '{self.name}' declares secrets but no secret store is configured"
            )
        return context.secrets.resolve(self._spec.secrets)

    def check_outputs(self, raw: dict[str, str], secret_values: Iterable[str] = ()) -> dict[str, Any]:
        """
        Enforce the declared output contract and coerce values to their types.

        Undeclared outputs are passed through as strings. Outputs are
        checkpointed and reported, so none may carry a secret value.

        Raises:
            OutputContractError: If a declared output is missing or mistyped,
                or any output contains a secret value
        """
        secrets = [value for value in secret_values if value]
        leaking = sorted(name for name, value in raw.items() if any(s in value for s in secrets))
        if leaking:
            raise OutputContractError(
                f"Stage '{self.name}' output(s) contain a secret value: {', '.join(leaking)}"
            )

        missing = [name for name in self._spec.outputs if name not in raw]
        if missing:
            raise OutputContractError(
                f"Stage '{self.name}' did not produce declared output(s): {', '.join(missing)}"
            )

        typed: dict[str, Any] = dict(raw)
        for name, output_type in self._spec.outputs.items():
            try:
                typed[name] = coerce_output(raw[name], output_type)
            except ValueError as e:
                raise OutputContractError(
                    f"Output '{name}' of stage '{self.name}' is not a valid {output_type.value}: {e}"
                ) from e
        return typed

    def check_gate(self, outputs: dict[str, Any]) -> None:
        """
        Enforce the stage's quality gate.

        Raises:
            QualityGateError: Listing every failed condition
        """
        if not self._spec.gate:
            return
        failures = []
        for key, condition in self._spec.gate.items():
            reason = condition.check(outputs[key])
            if reason:
                failures.append(f"{key}: {reason}")
        if failures:
            raise QualityGateError(
                f"Quality gate failed for stage '{self.name}': {'; '.join(failures)}"
            )
        logger.info(f"[{self.name}] Quality gate passed ({', '.join(self._spec.gate)})")

    async def execute(self, context: StageContext) -> StageResult:
        attempts = 0
        duration = 0.0
        last: CommandResult | None = None

        try:
            secrets = self._resolve_secrets(context)
            env = {**self.build_env(context), **secrets}

            async for attempt in stage_retrying(self.retry_policy):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    env["SHIPLINE_ATTEMPT"] = str(attempts)
                    logger.info(f"[{self.name}] Attempt {attempts}/{self.retry_policy.attempts}")

                    started = time.monotonic()
                    try:
                        last = await self._executor.run(
                            self._spec.run,
                            env=env,
                            timeout=self.timeout,
                            cwd=self._spec.working_dir,
                            log_path=self._executor.log_path_for(context.run_id, self.name, attempts),
                            redact_values=secrets.values(),
                        )
                    finally:
                        duration += time.monotonic() - started

                    if last.timed_out:
                        raise StageTimeoutError(self.timeout)
                    if last.exit_code != 0:
                        raise StageCommandError(last.exit_code)

            outputs = self.check_outputs(last.outputs, secrets.values())
            self.check_gate(outputs)

        except (StageError, SecretStoreError, OSError) as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"[{self.name}] Stage failed after {attempts} attempt(s): {error}")
            return StageResult(
                stage_name=self.name,
                status=StageStatus.FAILED,
                attempts=attempts,
                exit_code=last.exit_code if last else None,
                duration=duration,
                error=error,
                log_path=last.log_path if last else None,
                allowed_failure=self._spec.allow_failure,
            )

        logger.info(f"[{self.name}] Stage succeeded in {duration:.1f}s ({attempts} attempt(s))")
        return StageResult(
            stage_name=self.name,
            status=StageStatus.SUCCEEDED,
            outputs=outputs,
            attempts=attempts,
            exit_code=last.exit_code,
            duration=duration,
            log_path=last.log_path,
        )

    async def rollback(self, context: StageContext, outputs: dict[str, Any]) -> StageResult:
        if not self._spec.rollback:
            raise NotImplementedError(f"Stage '{self.name}' has no rollback")

        last: CommandResult | None = None
        try:
            secrets = self._resolve_secrets(context)
            env = self.build_env(context, strict=False)
            env["SHIPLINE_ROLLBACK"] = "1"
            for key, value in outputs.items():
                env[env_key("SHIPLINE_OUTPUT", key)] = _env_value(value)
            if context.last_good_run_id:
                env["SHIPLINE_LAST_GOOD_RUN_ID"] = context.last_good_run_id
            for stage, stage_outputs in context.last_good.items():
                for key, value in stage_outputs.items():
                    env[env_key("SHIPLINE_LAST_GOOD", stage, key)] = _env_value(value)
            env.update(secrets)

            logger.info(f"[{self.name}] Rolling back")
            last = await self._executor.run(
                self._spec.rollback,
                env=env,
                timeout=self._config.rollback.timeout,
                cwd=self._spec.working_dir,
                log_path=self._executor.log_path_for(context.run_id, self.name, "rollback"),
                redact_values=secrets.values(),
            )
        except (StageError, SecretStoreError, OSError) as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"[{self.name}] Rollback failed: {error}")
            return StageResult(
                stage_name=self.name,
                status=StageStatus.ROLLBACK_FAILED,
                attempts=1 if last else 0,
                exit_code=last.exit_code if last else None,
                error=error,
                log_path=last.log_path if last else None,
            )

        if not last.succeeded:
            error = (
                f"Rollback timed out after {self._config.rollback.timeout}s"
                if last.timed_out
                else f"Rollback command exited with status {last.exit_code}"
            )
            logger.error(f"[{self.name}] {error}")
            return StageResult(
                stage_name=self.name,
                status=StageStatus.ROLLBACK_FAILED,
                attempts=1,
                exit_code=last.exit_code,
                duration=last.duration,
                error=error,
                log_path=last.log_path,
            )

        logger.info(f"[{self.name}] Rolled back in {last.duration:.1f}s")
        return StageResult(
            stage_name=self.name,
            status=StageStatus.ROLLED_BACK,
            attempts=1,
            exit_code=last.exit_code,
            duration=last.duration,
            log_path=last.log_path,
        )
