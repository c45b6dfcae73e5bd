"""
BeliefMesh Epoch CLI

Commands that run the consensus core over a scenario file:
- decompose: Show the decomposition of a scenario's submissions
- process: Run one epoch and show scores and stake movement

A scenario is a JSON or YAML document::

    belief:
      belief_id: rain-tomorrow
      creator_agent_id: alice
      expiration_epoch: 10
    agents:
      - {agent_id: alice, total_stake: 1000000}
      - {agent_id: bob, total_stake: 1000000}
    locks: {alice: 500000, bob: 250000}
    submissions:
      - {agent_id: alice, epoch: 1, belief: 0.8, meta_prediction: 0.6}
      - {agent_id: bob, epoch: 1, belief: 0.4, meta_prediction: 0.5}
    weights: {alice: 0.5, bob: 0.5}   # optional, decompose only

The scenario is loaded into in-memory stores; nothing is persisted.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click
import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError
from rich import box
from rich.console import Console
from rich.table import Table

from beliefmesh.config import ProtocolConfig
from beliefmesh.consensus.signals import ConsensusResult
from beliefmesh.epochs.orchestrator import EpochOrchestrator, EpochResult
from beliefmesh.epochs.submissions import SubmissionService
from beliefmesh.exceptions import BeliefMeshError
from beliefmesh.ledger.weights import LockedStakeWeightProvider
from beliefmesh.models import Agent, Belief
from beliefmesh.storage import MemoryStorageProvider, ProviderStores

console = Console()


class ScenarioSubmission(BaseModel):
    agent_id: str
    epoch: int = Field(ge=0)
    belief: float
    meta_prediction: float


class Scenario(BaseModel):
    """A belief, its agents and their submissions."""

    belief: Belief
    agents: list[Agent] = Field(default_factory=list)
    locks: dict[str, int] = Field(default_factory=dict)
    submissions: list[ScenarioSubmission] = Field(default_factory=list)
    weights: Optional[dict[str, float]] = None

    @property
    def latest_epoch(self) -> int:
        if not self.submissions:
            return self.belief.created_epoch
        return max(s.epoch for s in self.submissions)


class LoadedScenario:
    """A scenario loaded into memory-backed stores."""

    def __init__(self, scenario: Scenario, config: ProtocolConfig) -> None:
        self.scenario = scenario
        self.stores = ProviderStores(MemoryStorageProvider())
        self.weights = LockedStakeWeightProvider(self.stores.locks)
        self.orchestrator = EpochOrchestrator(
            self.stores.submissions,
            self.weights,
            self.stores.stakes,
            self.stores.history,
            self.stores.beliefs,
            config,
        )
        self._intake = SubmissionService(self.stores.submissions, self.stores.beliefs, config)

    async def populate(self) -> "LoadedScenario":
        scenario = self.scenario
        await self.stores.provider.connect()
        await self.stores.beliefs.save_belief(scenario.belief)
        for agent in scenario.agents:
            await self.stores.stakes.create_agent(agent)
        for agent_id, lock in scenario.locks.items():
            await self.stores.locks.set_lock(scenario.belief.belief_id, agent_id, lock)
        for s in sorted(scenario.submissions, key=lambda s: s.epoch):
            await self._intake.submit(s.agent_id, scenario.belief.belief_id, s.epoch, s.belief, s.meta_prediction)
        return self

    async def default_weights(self, epoch: int) -> dict[str, float]:
        """Weights from the scenario, or from locked stake over the agents that submitted."""
        if self.scenario.weights is not None:
            return dict(self.scenario.weights)
        agent_ids = sorted({s.agent_id for s in self.scenario.submissions if s.epoch <= epoch})
        allocation = await self.weights.compute_weights(self.scenario.belief.belief_id, agent_ids)
        return allocation.weights


def _load_scenario(path: Path) -> Scenario:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    return Scenario.model_validate(data)


def _config(no_fallback: bool) -> ProtocolConfig:
    config = ProtocolConfig.from_env()
    if no_fallback:
        config = config.model_copy(update={"fallback_to_weighted_average": False})
    return config


def _output_json(data: object) -> None:
    """Print data as JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def _output_yaml(data: object) -> None:
    """Print data as YAML to stdout."""
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def _output(data: dict, fmt: str) -> bool:
    if fmt == "json":
        _output_json(data)
        return True
    if fmt == "yaml":
        _output_yaml(data)
        return True
    return False


def _fail(exc: Exception) -> None:
    if isinstance(exc, BeliefMeshError):
        click.echo(f"Error: {exc}", err=True)
    else:
        click.echo(f"Error: invalid scenario: {exc}", err=True)
    raise SystemExit(1)


def _open(scenario_path: str, no_fallback: bool) -> LoadedScenario:
    try:
        scenario = _load_scenario(Path(scenario_path))
        return asyncio.run(LoadedScenario(scenario, _config(no_fallback)).populate())
    except (BeliefMeshError, ModelValidationError, json.JSONDecodeError, yaml.YAMLError) as exc:
        _fail(exc)


def _score_style(value: float) -> str:
    if value > 0:
        return "green"
    if value < 0:
        return "red"
    return "white"


_FORMAT = click.option(
    "--format", "fmt",
    type=click.Choice(["table", "json", "yaml"]),
    default="table",
    help="Output format (table, json, or yaml).",
)
_NO_FALLBACK = click.option(
    "--no-fallback", is_flag=True, default=False,
    help="Fail instead of falling back to the weighted average.",
)


@click.command()
@click.argument("scenario", type=click.Path(exists=True, dir_okay=False))
@click.option("--epoch", type=int, default=None, help="Epoch to read submissions up to (default: latest).")
@_FORMAT
@_NO_FALLBACK
def decompose(scenario: str, epoch: Optional[int], fmt: str, no_fallback: bool):
    """Decompose the latest submissions of SCENARIO.

    Prints the aggregate, the fitted local expectations matrix and each
    agent's leave-one-out estimates. Nothing is written.
    """
    loaded = _open(scenario, no_fallback)
    epoch = loaded.scenario.latest_epoch if epoch is None else epoch
    belief_id = loaded.scenario.belief.belief_id

    async def run() -> ConsensusResult:
        weights = await loaded.default_weights(epoch)
        return await loaded.orchestrator.decompose(belief_id, weights, epoch)

    try:
        result = asyncio.run(run())
    except BeliefMeshError as exc:
        _fail(exc)

    data = {"belief_id": belief_id, "epoch": epoch, **result.to_dict()}
    if _output(data, fmt):
        return

    console.print(f"\n[bold blue]Decomposition: {belief_id} (epoch {epoch})[/bold blue]\n")
    summary = Table(box=box.SIMPLE, show_header=False)
    summary.add_column("Field", style="bold cyan", no_wrap=True)
    summary.add_column("Value")
    summary.add_row("Aggregate", f"{result.aggregate:.4f}")
    summary.add_row("Certainty", f"{result.certainty:.4f}")
    summary.add_row("Disagreement entropy", f"{result.disagreement_entropy:.4f} bits")
    if result.matrix is not None:
        summary.add_row("Common prior", f"{result.prior:.4f}")
        summary.add_row("Matrix", f"[[{result.matrix.w11:.4f}, {result.matrix.w12:.4f}], "
                                  f"[{result.matrix.w21:.4f}, {result.matrix.w22:.4f}]]")
        summary.add_row("Quality", f"{result.quality:.3f}")
        summary.add_row("Condition number", f"{result.condition_number:.2f}")
    else:
        summary.add_row("Method", "[yellow]weighted average[/yellow]")
    console.print(summary)

    table = Table(box=box.ROUNDED)
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Weight", justify="right")
    table.add_column("Belief", justify="right")
    table.add_column("Meta", justify="right")
    table.add_column("LOO aggregate", justify="right")
    table.add_column("LOO meta", justify="right")
    for agent_id, weight in result.weights.items():
        loo = result.leave_one_out[agent_id]
        table.add_row(
            agent_id,
            f"{weight:.4f}",
            f"{result.beliefs[agent_id]:.4f}",
            f"{result.meta_predictions[agent_id]:.4f}",
            f"{loo.aggregate:.4f}",
            f"{loo.meta_aggregate:.4f}",
        )
    console.print(table)
    console.print(f"\n  Participants: {result.participant_count}\n")


@click.command()
@click.argument("scenario", type=click.Path(exists=True, dir_okay=False))
@click.option("--epoch", type=int, required=True, help="Epoch to process.")
@_FORMAT
@_NO_FALLBACK
def process(scenario: str, epoch: int, fmt: str, no_fallback: bool):
    """Run SCENARIO through one epoch.

    Shows the aggregate, each submitter's truth-serum score and the
    resulting stake movement.
    """
    loaded = _open(scenario, no_fallback)
    belief_id = loaded.scenario.belief.belief_id

    async def run() -> tuple[EpochResult, dict[str, int]]:
        result = await loaded.orchestrator.process_epoch(belief_id, epoch)
        agent_ids = [a.agent_id for a in loaded.scenario.agents]
        return result, await loaded.stores.stakes.get_stakes(agent_ids)

    try:
        result, balances = asyncio.run(run())
    except BeliefMeshError as exc:
        _fail(exc)

    if _output({**result.model_dump(mode="json"), "stakes": balances}, fmt):
        return

    console.print(f"\n[bold blue]Epoch {epoch}: {belief_id}[/bold blue]\n")
    summary = Table(box=box.SIMPLE, show_header=False)
    summary.add_column("Field", style="bold cyan", no_wrap=True)
    summary.add_column("Value")
    summary.add_row("Aggregate", f"{result.aggregate:.4f}")
    summary.add_row("Certainty", f"{result.certainty:.4f}")
    summary.add_row("Disagreement entropy", f"{result.disagreement_entropy:.4f} bits")
    summary.add_row("Method", result.aggregation_method or "-")
    summary.add_row("Slashing pool", str(result.slashing_pool))
    if result.archived:
        summary.add_row("Status", "[yellow]archived[/yellow]")
    console.print(summary)

    table = Table(box=box.ROUNDED)
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("BTS score", justify="right")
    table.add_column("Information", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Stake", justify="right")
    for agent_id in sorted(balances):
        score = result.bts_scores.get(agent_id)
        delta = result.stake_deltas.get(agent_id, 0)
        table.add_row(
            agent_id,
            "-" if score is None else f"[{_score_style(score)}]{score:+.4f}[/{_score_style(score)}]",
            f"{result.information_scores[agent_id]:+.3f}" if agent_id in result.information_scores else "-",
            f"[{_score_style(delta)}]{delta:+d}[/{_score_style(delta)}]",
            str(balances[agent_id]),
        )
    console.print(table)

    if result.updated_beliefs:
        console.print("\n  Passive beliefs moved toward the aggregate:")
        for agent_id, value in sorted(result.updated_beliefs.items()):
            console.print(f"    {agent_id}: {value:.4f}")
        console.print(
            f"  Post-update aggregate: {result.post_mirror_descent_aggregate:.4f} "
            f"(entropy {result.post_mirror_descent_entropy:.4f} bits)"
        )
    console.print()
