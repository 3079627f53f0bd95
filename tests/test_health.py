from tv_executor import probes
from tv_executor.health import MAX_INTERSTITIAL_ATTEMPTS, HealthMonitor
from tv_executor.models import ConnectionStatus

from tests.fakes import FakeSurface, StubSessionManager

LIVENESS = "() => true"


def monitor(timings):
    return HealthMonitor(StubSessionManager(), timings)


def test_no_surface_needs_restart(timings):
    assert monitor(timings).check(None) is ConnectionStatus.RESTART_NEEDED


def test_closed_surface_needs_restart(timings):
    surface = FakeSurface()
    surface.close()
    assert monitor(timings).check(surface) is ConnectionStatus.RESTART_NEEDED


def test_live_page_is_valid(timings):
    assert monitor(timings).check(FakeSurface()) is ConnectionStatus.VALID


def test_detached_page_is_rebound(timings):
    surface = FakeSurface()
    surface.fail_on('evaluate', LIVENESS)
    surface.rebind_result = True
    assert monitor(timings).check(surface) is ConnectionStatus.RECOVERED


def test_detached_page_without_live_sibling_needs_restart(timings):
    surface = FakeSurface()
    surface.fail_on('evaluate', LIVENESS)
    assert monitor(timings).check(surface) is ConnectionStatus.RESTART_NEEDED


def test_other_probe_errors_count_as_healthy(timings):
    surface = FakeSurface()
    surface.fail_on('evaluate', LIVENESS, error=RuntimeError("Execution context was destroyed"))
    assert monitor(timings).check(surface) is ConnectionStatus.VALID


def test_disconnect_dialog_is_cleared(timings):
    dialogs = iter(['ACCOUNT_ACCESSED'])
    surface = FakeSurface(elements={probes.RECOVERY_CONTROLS: {}},
                          scripts={probes.DISCONNECT_SCRIPT: lambda _: next(dialogs, None)})
    health = monitor(timings)

    assert health.reconcile_interstitials(surface) == ['ACCOUNT_ACCESSED']
    assert surface.clicks() == [probes.RECOVERY_CONTROLS]
    assert health.session_manager.reattach_calls == 1


def test_persistent_dialog_gives_up_after_bounded_attempts(timings):
    surface = FakeSurface(scripts={probes.DISCONNECT_SCRIPT: 'CONNECTION_CLOSED'})
    seen = monitor(timings).reconcile_interstitials(surface)
    assert seen == ['CONNECTION_CLOSED'] * MAX_INTERSTITIAL_ATTEMPTS


def test_no_dialog(timings):
    surface = FakeSurface()
    assert monitor(timings).reconcile_interstitials(surface) == []
    assert surface.clicks() == []


def test_dismiss_promotion(timings):
    surface = FakeSurface(elements={probes.PROMOTION_CLOSE: {}})
    health = monitor(timings)
    assert health.dismiss_promotion(surface)
    assert surface.clicks() == [probes.PROMOTION_CLOSE]
    assert not health.dismiss_promotion(FakeSurface())
