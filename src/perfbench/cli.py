"""CLI commands for perfbench."""

from pathlib import Path

import click


@click.group()
@click.version_option(package_name="app-perfbench")
def main() -> None:
    """Benchmark an Android app's CPU and memory usage over time."""
    pass


@main.command()
@click.option("--package", "-p", "package", help="Application package name")
@click.option("--serial", "-s", help="adb device serial")
@click.option("--duration", "-d", type=float, help="Test duration in minutes")
@click.option("--cpu-interval", type=float, help="Seconds between CPU samples")
@click.option("--mem-interval", type=float, help="Seconds between memory samples")
@click.option("--method", type=click.Choice(["procstat", "dumpsys"]), help="CPU collection method")
@click.option("--min-cpu", type=float, help="Minimum CPU percent for a sample to count")
@click.option("--strict/--no-strict", default=None, help="Reject samples with unknown window")
@click.option("--local", is_flag=True, help="Benchmark a process on this host instead of adb")
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    help="Directory to create the test directory in",
)
def run(
    package: str | None,
    serial: str | None,
    duration: float | None,
    cpu_interval: float | None,
    mem_interval: float | None,
    method: str | None,
    min_cpu: float | None,
    strict: bool | None,
    local: bool,
    output: Path,
) -> None:
    """Run a benchmark and write the CSV logs and report."""
    import asyncio

    from perfbench import logging as console
    from perfbench.config import Config
    from perfbench.device import AdbDevice, DeviceError, LocalDevice, resolve_serial
    from perfbench.runner import run_bench

    try:
        config = Config.load()
        if package:
            config.device.package = package
        if serial:
            config.device.serial = serial
        if local:
            config.device.backend = "local"
        if duration is not None:
            config.sampling.duration_minutes = duration
        if cpu_interval is not None:
            config.sampling.cpu_interval = cpu_interval
        if mem_interval is not None:
            config.sampling.mem_interval = mem_interval
        if method:
            config.sampling.cpu_method = method
        if min_cpu is not None:
            config.filter.min_cpu_percent = min_cpu
        if strict is not None:
            config.filter.strict_window = strict
        config.validate()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    console.configure(config)

    try:
        if config.device.backend == "local":
            device = LocalDevice()
        else:
            device_serial = resolve_serial(config.device.serial)
            console.device_selected(device_serial)
            device = AdbDevice(device_serial)

        output.mkdir(parents=True, exist_ok=True)
        result = asyncio.run(run_bench(config, device, output))
    except DeviceError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Test directory: {result.test_dir}")
    click.echo(f"Report: {result.report_path}")
    click.echo(f"Status: {result.status.value}")


@main.command()
@click.argument("test_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
@click.option("--write", is_flag=True, help="Rewrite report.md from the CSV logs")
@click.option("--html", "as_html", is_flag=True, help="Write an HTML report with charts")
@click.option(
    "--out",
    type=click.Path(dir_okay=False, path_type=Path),
    help="HTML output path (default: TEST_DIR/report.html)",
)
@click.option(
    "--cpu-log",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="CPU log to read instead of TEST_DIR/cpu_log.csv",
)
@click.option(
    "--mem-log",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Memory log to read instead of TEST_DIR/mem_log.csv",
)
def report(
    test_dir: Path,
    as_json: bool,
    write: bool,
    as_html: bool,
    out: Path | None,
    cpu_log: Path | None,
    mem_log: Path | None,
) -> None:
    """Recompute a test's statistics from its CSV logs.

    Inclusion thresholds come from the existing report when present, so the
    statistics match what the live run computed.
    """
    import json

    from perfbench.config import Config
    from perfbench.htmlreport import write_html_report
    from perfbench.report import RunSettings, load_run, recover_meta, summary_to_dict, write_report

    try:
        config = Config.load()
        run = load_run(test_dir, RunSettings.from_config(config), cpu_log, mem_log)
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e

    summary, settings = run.summary(), run.settings
    meta = recover_meta(run, config.device.package, config.sampling.duration_minutes)

    if write:
        write_report(summary, meta)

    if as_html:
        html_path = write_html_report(summary, meta, run.cpu_samples, run.mem_samples, out)
        if not as_json:
            click.echo(f"HTML report: {html_path}")

    if as_json:
        click.echo(json.dumps(summary_to_dict(summary, settings), indent=2))
        return

    cpu, mem, leak = summary.cpu, summary.memory, summary.leak
    click.echo(f"Test directory: {test_dir}")
    click.echo(f"CPU method: {settings.method.value}")
    click.echo()
    click.echo("CPU")
    click.echo(f"  Average: {cpu.avg_cpu:.2f}% ({cpu.avg_dmips} DMIPS)")
    click.echo(f"  Peak:    {cpu.peak_cpu:.2f}% ({cpu.peak_dmips} DMIPS)")
    click.echo(f"  Minimum: {cpu.min_cpu:.2f}% ({cpu.min_dmips} DMIPS)")
    click.echo(
        f"  Samples: {cpu.total} total, {cpu.included} counted, {cpu.excluded} filtered, "
        f"{cpu.unknown_window} unknown window"
    )
    click.echo()
    click.echo("Memory (PSS)")
    click.echo(f"  Average: {mem.avg_pss_mb:.2f} MB")
    click.echo(f"  Maximum: {mem.max_pss_mb:.2f} MB")
    click.echo(f"  Minimum: {mem.min_pss_mb:.2f} MB")
    click.echo("Memory (RSS)")
    click.echo(f"  Average: {mem.avg_rss_mb:.2f} MB")
    click.echo(f"  Maximum: {mem.max_rss_mb:.2f} MB")
    click.echo(f"  Minimum: {mem.min_rss_mb:.2f} MB")
    click.echo()
    click.echo(f"Memory leak: {leak.describe()}")


@main.command()
def devices() -> None:
    """List online adb devices."""
    from perfbench.device import DeviceError, list_adb_devices

    try:
        serials = list_adb_devices()
    except DeviceError as e:
        raise click.ClickException(str(e)) from e

    if not serials:
        click.echo("No online devices.")
        return
    for serial in serials:
        click.echo(serial)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from perfbench.config import Config

    try:
        cfg = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[device]")
    click.echo(f"  package = {cfg.device.package}")
    click.echo(f"  serial = {cfg.device.serial or '(first online)'}")
    click.echo(f"  backend = {cfg.device.backend}")
    click.echo(f"  single_core_dmips = {cfg.device.single_core_dmips}")
    click.echo()
    click.echo("[sampling]")
    click.echo(f"  duration_minutes = {cfg.sampling.duration_minutes}")
    click.echo(f"  cpu_interval = {cfg.sampling.cpu_interval}")
    click.echo(f"  mem_interval = {cfg.sampling.mem_interval}")
    click.echo(f"  alive_check_interval = {cfg.sampling.alive_check_interval}")
    click.echo(f"  absence_grace_seconds = {cfg.sampling.absence_grace_seconds}")
    click.echo(f"  cpu_method = {cfg.sampling.cpu_method}")
    click.echo()
    click.echo("[filter]")
    click.echo(f"  min_cpu_percent = {cfg.filter.min_cpu_percent}")
    click.echo(f"  strict_window = {str(cfg.filter.strict_window).lower()}")
    click.echo(f"  window_min_ms = {cfg.filter.window_min_ms}")
    click.echo(f"  window_max_ms = {cfg.filter.window_max_ms}")
    click.echo()
    click.echo("[leak]")
    click.echo(f"  leak_threshold = {cfg.leak.leak_threshold}")
    click.echo(f"  decline_threshold = {cfg.leak.decline_threshold}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from perfbench.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
