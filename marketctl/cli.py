"""CLI interface for marketctl."""

import logging
import os
import sys
from datetime import datetime, timedelta
from functools import wraps
from typing import Optional

import click

from .errors import CapacityExceededError, MarketError
from .ledger import format_time_remaining, remaining_credits
from .market import Marketplace
from .models import Account, Config, Job, JobStatus, PlanStatus, Tier, utcnow
from .storage import Storage
from .sweeper import Sweeper


# Global storage instance
_storage: Optional[Storage] = None


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        data_dir = os.environ.get("MARKETCTL_DATA_DIR", ".marketctl")
        _storage = Storage(data_dir)
    return _storage


def get_market() -> Marketplace:
    return Marketplace(get_storage())


def reports_errors(func):
    """Turn marketplace errors into a one-line message and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CapacityExceededError as e:
            click.echo(f"✗ {e}", err=True)
            if e.retry_at is not None:
                click.echo(f"  Next allowed at {e.retry_at:%Y-%m-%d %H:%M:%S} UTC", err=True)
            sys.exit(1)
        except MarketError as e:
            click.echo(f"✗ {e}", err=True)
            sys.exit(1)
    return wrapper


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _echo_account(account: Account, config: Config) -> None:
    remaining = remaining_credits(account, config.free_credit_quota)
    click.echo(f"\nAccount {account.id} ({account.name})")
    click.echo(f"  Tier:          {account.tier.value} ({account.plan_status.value})")
    click.echo(f"  Credits used:  {account.credits_used}")
    click.echo(f"  Remaining:     {'unlimited' if remaining is None else remaining}")
    click.echo(f"  Jobs posted:   {account.jobs_posted}")
    click.echo(f"  Banned:        {'yes' if account.banned else 'no'}")
    click.echo()


def _echo_job(job: Job) -> None:
    click.echo(f"\nJob {job.id}: {job.title}")
    click.echo(f"  Status:    {job.status.value}")
    click.echo(f"  Poster:    {job.poster_id}")
    click.echo(f"  Deadline:  {_fmt(job.deadline)}")
    if job.budget is not None:
        click.echo(f"  Budget:    {job.budget:g}")
    if job.assigned_bidder_id:
        click.echo(f"  Assigned:  {job.assigned_bidder_id} (bid {job.accepted_bid_id})")
    if job.bids:
        click.echo(f"\n  {'Bid':<14} {'Bidder':<14} {'Amount':<10} {'Status':<10} {'Applied':<20}")
        click.echo("  " + "-" * 70)
        for bid in job.bids:
            click.echo(
                f"  {bid.id:<14} {bid.bidder_id:<14} {bid.proposed_amount:<10g} "
                f"{bid.status.value:<10} {_fmt(bid.applied_at):<20}"
            )
    click.echo()


@click.group()
def cli():
    """MarketCTL - Job Award Coordination"""
    level = get_storage().get_config().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.group()
def account():
    """Manage accounts and their ledgers"""
    pass


@account.command("create")
@click.argument("name")
@click.option("--tier", type=click.Choice([t.value for t in Tier]), default=Tier.FREE.value)
@click.option("--id", "account_id", default=None, help="Use a specific account ID")
@reports_errors
def account_create(name: str, tier: str, account_id: Optional[str]):
    """Create an account.

    Example:
        marketctl account create alice --tier paid
    """
    created = get_market().create_account(name, Tier(tier), account_id)
    click.echo(f"✓ Account {created.id} created")


@account.command("show")
@click.argument("account_id")
@reports_errors
def account_show(account_id: str):
    """Show an account's ledger and posting throttle."""
    market = get_market()
    found = market.get_account(account_id)
    _echo_account(found, get_storage().get_config())
    next_post = market.next_allowed_post_time(account_id)
    if next_post is not None:
        click.echo(f"  Next job post allowed in {format_time_remaining(next_post, utcnow())}\n")


@account.command("list")
def account_list():
    """List accounts."""
    accounts = get_market().list_accounts()
    if not accounts:
        click.echo("No accounts found")
        return

    click.echo(f"\n{'ID':<14} {'Name':<20} {'Tier':<6} {'Credits':<8}")
    click.echo("-" * 50)
    for acct in accounts:
        click.echo(f"{acct.id:<14} {acct.name:<20} {acct.tier.value:<6} {acct.credits_used:<8}")
    click.echo()


@account.command("credits")
@click.argument("account_id")
@click.option("--adjust", type=int, required=True, help="Credits to add (negative to refund)")
@reports_errors
def account_credits(account_id: str, adjust: int):
    """Administratively adjust credits used.

    Example:
        marketctl account credits alice --adjust -1
    """
    updated = get_market().adjust_credits(account_id, adjust)
    click.echo(f"✓ Account {account_id} credits used: {updated.credits_used}")


@account.command("plan")
@click.argument("account_id")
@click.argument("tier", type=click.Choice([t.value for t in Tier]))
@click.option("--status", "plan_status", type=click.Choice([s.value for s in PlanStatus]),
              default=PlanStatus.ACTIVE.value)
@reports_errors
def account_plan(account_id: str, tier: str, plan_status: str):
    """Change an account's plan."""
    get_market().set_plan(account_id, Tier(tier), PlanStatus(plan_status))
    click.echo(f"✓ Account {account_id} is now on the {tier} plan ({plan_status})")


@cli.group()
def job():
    """Post and manage jobs"""
    pass


@job.command("post")
@click.option("--poster", required=True, help="Poster account ID")
@click.option("--title", required=True)
@click.option("--description", default="")
@click.option("--budget", type=float, default=None)
@click.option("--deadline-hours", type=float, default=72.0, help="Hours until bidding closes")
@reports_errors
def job_post(poster: str, title: str, description: str, budget: Optional[float], deadline_hours: float):
    """Post a new job.

    Example:
        marketctl job post --poster bob --title "Fix sink" --budget 500
    """
    deadline = utcnow() + timedelta(hours=deadline_hours)
    posted = get_market().post_job(poster, title, deadline, description=description, budget=budget)
    click.echo(f"✓ Job {posted.id} posted")


@job.command("show")
@click.argument("job_id")
@reports_errors
def job_show(job_id: str):
    """Show a job and its bids."""
    _echo_job(get_market().get_job(job_id))


@job.command("list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--limit", default=10, help="Maximum jobs to display")
def job_list(status: Optional[str], limit: int):
    """List jobs by status.

    Example:
        marketctl job list --status open
    """
    jobs = get_market().list_jobs(JobStatus(status) if status else None)[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<14} {'Status':<12} {'Bids':<6} {'Deadline':<20} {'Title':<30}")
    click.echo("-" * 82)
    for j in jobs:
        click.echo(f"{j.id:<14} {j.status.value:<12} {len(j.bids):<6} {_fmt(j.deadline):<20} {j.title[:30]:<30}")
    click.echo()


@job.command("status")
@click.argument("job_id")
@click.argument("new_status", type=click.Choice(["completed", "cancelled", "disputed"]))
@click.option("--actor", required=True, help="Account requesting the change")
@click.option("--reason", default=None)
@reports_errors
def job_status(job_id: str, new_status: str, actor: str, reason: Optional[str]):
    """Move a job to a new status.

    Example:
        marketctl job status 3f2a cancelled --actor bob
    """
    get_market().update_status(job_id, JobStatus(new_status), actor, reason)
    click.echo(f"✓ Job {job_id} is now {new_status}")


@job.command("check")
def job_check():
    """Verify award invariants across all jobs."""
    problems = []
    for j in get_market().list_jobs():
        problems.extend(j.invariant_violations())

    if problems:
        for problem in problems:
            click.echo(f"✗ {problem}", err=True)
        sys.exit(1)
    click.echo("✓ All jobs consistent")


@cli.group()
def bid():
    """Submit and decide bids"""
    pass


@bid.command("submit")
@click.argument("job_id")
@click.option("--bidder", required=True, help="Bidder account ID")
@click.option("--amount", type=float, required=True)
@click.option("--message", default="")
@reports_errors
def bid_submit(job_id: str, bidder: str, amount: float, message: str):
    """Submit a bid on an open job."""
    submitted = get_market().submit_bid(job_id, bidder, amount, message)
    click.echo(f"✓ Bid {submitted.id} submitted")


@bid.command("withdraw")
@click.argument("job_id")
@click.argument("bid_id")
@click.option("--bidder", required=True)
@reports_errors
def bid_withdraw(job_id: str, bid_id: str, bidder: str):
    """Withdraw a pending bid."""
    get_market().withdraw_bid(job_id, bid_id, bidder)
    click.echo(f"✓ Bid {bid_id} withdrawn")


@bid.command("accept")
@click.argument("job_id")
@click.argument("bid_id")
@click.option("--poster", required=True)
@click.option("--message", default=None)
@reports_errors
def bid_accept(job_id: str, bid_id: str, poster: str, message: Optional[str]):
    """Award a job to a bid, rejecting the other pending bids."""
    assignment = get_market().accept_bid(job_id, bid_id, poster, message)
    click.echo(f"✓ Job {job_id} assigned to {assignment.bidder.id}")
    if assignment.rejected:
        click.echo(f"  {len(assignment.rejected)} other bid(s) rejected")


@bid.command("reject")
@click.argument("job_id")
@click.argument("bid_id")
@click.option("--poster", required=True)
@click.option("--message", default=None)
@reports_errors
def bid_reject(job_id: str, bid_id: str, poster: str, message: Optional[str]):
    """Reject a single pending bid."""
    get_market().reject_bid(job_id, bid_id, poster, message)
    click.echo(f"✓ Bid {bid_id} rejected")


@cli.group()
def sweeper():
    """Expire jobs past their deadline"""
    pass


@sweeper.command("run-once")
def sweeper_run_once():
    """Run a single sweep."""
    expired = Sweeper(get_storage()).sweep_once()
    click.echo(f"✓ Expired {len(expired)} job(s)")


@sweeper.command("start")
@click.option("--interval", type=float, default=None, help="Seconds between sweeps")
def sweeper_start(interval: Optional[float]):
    """Run the sweeper until interrupted."""
    Sweeper(get_storage()).run(interval)


@cli.command()
def stats():
    """Show marketplace statistics."""
    storage = get_storage()
    counts = storage.get_stats()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("MarketCTL Status")
    click.echo("=" * 50)
    click.echo(f"Accounts:       {counts['accounts']}")
    click.echo(f"Total Jobs:     {counts['total']}")
    for status in JobStatus:
        click.echo(f"  {status.value + ':':<14}{counts[status.value]}")
    click.echo(f"Total Bids:     {counts['bids']}")
    click.echo("\nConfiguration:")
    click.echo(f"  Free Quota:   {config.free_credit_quota}")
    click.echo(f"  Post Cooldown: {config.post_cooldown_hours:g}h")
    click.echo("=" * 50 + "\n")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command()
def show():
    """Show current configuration.

    Example:
        marketctl config show
    """
    cfg = get_storage().get_config()

    click.echo("\nCurrent Configuration:")
    for name, value in cfg.model_dump().items():
        click.echo(f"  {name.replace('_', '-') + ':':<28}{value}")
    click.echo()


@config.command()
@click.argument("key")
@click.argument("value")
def set(key: str, value: str):
    """Set a configuration value.

    Example:
        marketctl config set free-credit-quota 5
        marketctl config set post-cooldown-hours 4
    """
    storage = get_storage()
    cfg = storage.get_config()
    field = key.replace("-", "_")

    if field not in Config.model_fields:
        click.echo(f"✗ Unknown config key: {key}", err=True)
        sys.exit(1)
    try:
        setattr(cfg, field, value)
    except ValueError as e:
        click.echo(f"✗ Invalid value: {e}", err=True)
        sys.exit(1)

    storage.set_config(cfg)
    click.echo(f"✓ Configuration updated: {key} = {value}")


if __name__ == "__main__":
    cli()
