"""
TrustGuard Command Line Interface.

Commands: assess, policy, demo, serve
"""

from __future__ import annotations

import json

import click

from .clock import ManualClock
from .config import TrustGuardSettings
from .core import TrustGuard
from .identity import Device, DeviceTrustLevel, Identity
from .log import configure_logging
from .policy import PolicyEngine, PolicyStore, load_default_policies
from .risk import RiskEngine


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default="warning", help="Log level (debug, info, warning, error)")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
def cli(log_level: str, json_logs: bool):
    """TrustGuard: zero trust access control and risk scoring engine"""
    configure_logging(log_level, json_logs)


@cli.command()
@click.option("--trust", default=0.5, type=click.FloatRange(0.0, 1.0), help="Identity trust score")
@click.option("--verified-ago", default=None, type=float, help="Seconds since last verification (omit: never)")
@click.option("--device", "device_level", default="provisional",
              type=click.Choice([lvl.value for lvl in DeviceTrustLevel] + ["unknown"]),
              help="Device trust level")
@click.option("--geo-anomalous", is_flag=True, help="Request location is anomalous")
@click.option("--network-anomalous", is_flag=True, help="Request network segment is anomalous")
@click.option("--ttl", default=3600.0, help="Verification TTL in seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def assess(trust: float, verified_ago: float | None, device_level: str, geo_anomalous: bool,
           network_anomalous: bool, ttl: float, as_json: bool):
    """Score one identity/device/context combination."""
    clock = ManualClock()
    engine = RiskEngine(clock, verification_ttl=ttl)
    identity = Identity(
        identity_id="cli-subject",
        trust_score=trust,
        last_verified_at=None if verified_ago is None else clock.now() - verified_ago,
    )
    device = None
    if device_level != "unknown":
        device = Device("cli-device", "cli-subject", trust_level=DeviceTrustLevel(device_level))

    result = engine.assess(identity, device, {
        "geo_anomalous": geo_anomalous,
        "network_anomalous": network_anomalous,
    })

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo("\n--- Risk Assessment ---")
    click.echo(f"Score:  {result.score:.2f}")
    click.echo(f"Level:  {result.level.value.upper()}"
               + ("  (quarantine override)" if result.quarantine_override else ""))
    click.echo("\nFactors:")
    for c in result.factors:
        bar = "#" * int(c.points)
        click.echo(f"  {c.factor:9s} {c.signal:28s} {c.points:6.2f} |{bar}")
    if result.recommendations:
        click.echo("\nRecommendations:")
        for rec in result.recommendations:
            click.echo(f"  - {rec}")


@cli.command()
@click.option("--file", "policy_file", default=None, help="YAML policy file (default: built-in policies)")
@click.option("--context", "contexts", multiple=True, help="JSON request context to simulate (repeatable)")
@click.option("--export", "do_export", is_flag=True, help="Print the loaded policies as YAML")
def policy(policy_file: str | None, contexts: tuple[str, ...], do_export: bool):
    """Load, list, check and simulate policies."""
    store = PolicyStore()
    if policy_file:
        with open(policy_file) as f:
            loaded = store.load_yaml(f.read())
        click.echo(f"[+] Loaded {len(loaded)} policies from {policy_file}")
    else:
        load_default_policies(store)
        click.echo("[+] Loaded built-in policies")

    summary = store.summary()
    click.echo("\n--- Policy Summary ---")
    click.echo(f"Total: {summary['total_policies']}, Active: {summary['enabled_policies']}, "
               f"Rules: {summary['total_rules']}")
    for p in summary["policies"]:
        scope = ", ".join(p["sensitivities"]) or "all resources"
        click.echo(f"  {p['policy_id']}@{p['version']}: {p['name']} ({p['rule_count']} rules; {scope})")

    conflicts = store.detect_conflicts()
    click.echo(f"\nConflicts detected: {len(conflicts)}")
    for c in conflicts:
        click.echo(f"  {c['rule_1']['rule_id']} ({c['rule_1']['effect']}) vs "
                   f"{c['rule_2']['rule_id']} ({c['rule_2']['effect']}) - winner: {c['winner']}")

    test_contexts = [json.loads(raw) for raw in contexts] or [
        {"risk_level": "high", "device_trust_level": "trusted", "identity_enabled": True},
        {"risk_level": "low", "device_trust_level": "trusted", "identity_enabled": True},
        {"risk_level": "medium", "device_trust_level": "untrusted", "identity_enabled": True},
    ]
    engine = PolicyEngine()
    click.echo("\n--- Policy Simulation ---")
    for ctx in test_contexts:
        click.echo(f"  Context: {json.dumps(ctx)}")
        for p in store.list(include_disabled=False):
            result = engine.evaluate(p, ctx)
            verdict = "allow" if result.allowed else "deny"
            click.echo(f"    {p.ref}: {verdict} (rule: {result.matched_rule_id or 'N/A'})")
        click.echo()

    if do_export:
        click.echo("--- Exported YAML ---")
        click.echo(store.export_yaml())


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind host")
@click.option("--port", default=8080, help="Bind port")
@click.option("--config", "config_file", default=None, help="YAML settings file")
@click.option("--policies", "policy_file", default=None, help="Extra YAML policies to load")
def serve(host: str, port: int, config_file: str | None, policy_file: str | None):
    """Run the REST API with continuous monitoring."""
    from .api import create_app

    settings = TrustGuardSettings.from_yaml(config_file) if config_file else TrustGuardSettings()
    configure_logging(settings.log_level, settings.json_logs)
    engine = TrustGuard(settings)
    if policy_file:
        with open(policy_file) as f:
            engine.policies.load_yaml(f.read())

    click.echo(f"[*] Starting TrustGuard API on {host}:{port}")
    engine.start()
    try:
        create_app(engine).run(host=host, port=port)
    finally:
        engine.close()


@cli.command()
def demo():
    """Run the zero trust decision scenarios end to end."""
    click.echo("=" * 60)
    click.echo("  TrustGuard  -  Zero Trust Decision Demo")
    click.echo("=" * 60)

    clock = ManualClock()
    tg = TrustGuard(TrustGuardSettings(transient_retry_backoff=0), clock=clock)

    # 1. Registry
    click.echo("\n[1/5] Registering identities, devices and resources...")
    tg.registry.upsert_identity("alice", {"department": "engineering", "role": "developer"})
    tg.registry.upsert_identity("bob", {"department": "finance", "role": "analyst"})
    tg.registry.register_device("laptop-alice", "alice", {"disk_encrypted": True}, "trusted")
    tg.registry.register_device("laptop-bob", "bob", {"disk_encrypted": True}, "trusted")
    tg.registry.register_device("phone-bob", "bob", {"jailbroken": True}, "provisional")
    tg.resources.register("payroll-db", "high", ["read", "write"])
    tg.resources.register("wiki", "low")
    click.echo(f"    {tg.registry.summary()['total_identities']} identities, "
               f"{tg.registry.summary()['total_devices']} devices, {len(tg.resources.list())} resources")

    # 2. Verification
    click.echo("\n[2/5] Verifying identities (alice with TOTP)...")
    tg.mfa.issue("alice", "271828")
    for ident, dev, mfa in (
        ("alice", "laptop-alice", {"method": "totp", "code": "271828"}),
        ("bob", "laptop-bob", None),
    ):
        result = tg.verification.verify(ident, dev, {"geolocation": "us-east", "network_segment": "corp"}, mfa=mfa)
        click.echo(f"    {ident}: verified={result.verified} trust={result.trust_score:.2f} "
                   f"mfa={result.mfa_method or '-'} "
                   f"session={result.session.session_id if result.session else '-'}")
    tg.registry.update_trust_score("alice", lambda _: 0.95)

    # 3. Grants
    click.echo("\n[3/5] Access decisions...")
    for label, args in (
        ("alice -> payroll-db (trust 0.95, trusted device)", ("alice", "laptop-alice", "payroll-db", ["read"])),
        ("bob   -> payroll-db (trust below 0.9)", ("bob", "laptop-bob", "payroll-db", ["read"])),
        ("bob   -> wiki       (provisional device)", ("bob", "phone-bob", "wiki", ["read"])),
    ):
        d = tg.access.decide_grant(*args)
        click.echo(f"    {label}: {d.outcome.value.upper()} (risk {d.risk_level} {d.risk_score:.2f})")
        for reason in d.reasons:
            click.echo(f"      - {reason}")

    # 4. Quarantine
    click.echo("\n[4/5] Quarantining bob's laptop...")
    tg.registry.update_device_trust_level("laptop-bob", "quarantined")
    d = tg.access.decide_check("bob", "wiki", "read", device_id="laptop-bob")
    click.echo(f"    bob check wiki on quarantined laptop: {d.outcome.value.upper()} (risk {d.risk_level})")
    click.echo(f"    bob active sessions: {len(tg.registry.active_sessions('bob'))}")

    # 5. Time passes
    click.echo("\n[5/5] Five hours without re-verification...")
    tg.monitor.tick_trust()
    clock.advance(5 * 3600)
    counts = tg.monitor.tick_trust()
    click.echo(f"    trust tick: {counts}")
    click.echo(f"    alice phase={tg.monitor.identity_phase('alice').value} "
               f"trust={tg.registry.get_identity('alice').trust_score:.2f}")
    d = tg.access.decide_grant("alice", "laptop-alice", "payroll-db", ["read"])
    click.echo(f"    alice -> payroll-db: {d.outcome.value.upper()}")

    stats = tg.audit.stats()
    click.echo(f"\n    Audit: {stats['decisions']} decisions ({stats['granted']} granted, "
               f"{stats['denied']} denied), {stats['violations']} violations")
    click.echo("\n" + "=" * 60)
    click.echo("  Demo complete. Never trust, always verify.")
    click.echo("=" * 60)
    tg.close()


def main():
    cli()


if __name__ == "__main__":
    main()
