from datetime import timedelta

from observability.alerts import DEFAULT_COOLDOWNS, AlertManager, AlertSeverity, AlertType


class TestAlertThrottling:
    def test_duplicate_inside_cooldown_is_emitted_once(self, clock):
        alerts = AlertManager(clock=clock)

        first = alerts.maybe_emit(
            AlertType.HIGH_DROP_OFF, "signup_start", AlertSeverity.WARNING, "62% drop-off"
        )
        second = alerts.maybe_emit(
            AlertType.HIGH_DROP_OFF, "signup_start", AlertSeverity.WARNING, "62% drop-off"
        )

        assert first is True
        assert second is False
        assert len(alerts.recent()) == 1

    def test_scopes_are_throttled_independently(self, clock):
        alerts = AlertManager(clock=clock)

        assert alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "landing", AlertSeverity.WARNING, "a")
        assert alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "signup", AlertSeverity.WARNING, "b")
        assert alerts.maybe_emit(AlertType.FRICTION_DETECTED, "landing", AlertSeverity.INFO, "c")

    def test_emits_again_after_cooldown(self, clock):
        alerts = AlertManager(cooldowns={"high_drop_off": 60}, clock=clock)

        alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "landing", AlertSeverity.WARNING, "a")
        clock.advance(59)
        assert not alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "landing", AlertSeverity.WARNING, "a")
        clock.advance(1)
        assert alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "landing", AlertSeverity.WARNING, "a")

    def test_suppressed_attempts_do_not_extend_cooldown(self, clock):
        alerts = AlertManager(cooldowns={"buffer_overflow": 100}, clock=clock)

        alerts.maybe_emit(AlertType.BUFFER_OVERFLOW, "ingestion", AlertSeverity.WARNING, "full")
        for _ in range(9):
            clock.advance(10)
            alerts.maybe_emit(AlertType.BUFFER_OVERFLOW, "ingestion", AlertSeverity.WARNING, "full")

        clock.advance(10)  # 100s after the only emitted alert
        assert alerts.maybe_emit(
            AlertType.BUFFER_OVERFLOW, "ingestion", AlertSeverity.WARNING, "full"
        )

    def test_cooldowns_differ_per_kind(self):
        alerts = AlertManager(default_cooldown_seconds=42)

        assert alerts.cooldown_for(AlertType.BUFFER_OVERFLOW) == timedelta(
            seconds=DEFAULT_COOLDOWNS["buffer_overflow"]
        )
        assert alerts.cooldown_for("experiment_significant") > alerts.cooldown_for(
            "buffer_overflow"
        )
        assert alerts.cooldown_for("something_new") == timedelta(seconds=42)

    def test_force_bypasses_throttle(self, clock):
        alerts = AlertManager(clock=clock)
        alerts.maybe_emit(AlertType.INGESTION_FAILURE, "processor", AlertSeverity.WARNING, "x")

        alert = alerts.recent()[0]
        assert alerts.is_suppressed(AlertType.INGESTION_FAILURE, "processor")
        assert alerts.emit(alert, force=True)


class TestAlertDelivery:
    def test_recent_is_newest_first_and_bounded(self, clock):
        alerts = AlertManager(history_size=2, clock=clock)
        for scope in ["a", "b", "c"]:
            alerts.maybe_emit(AlertType.FRICTION_DETECTED, scope, AlertSeverity.INFO, scope)

        assert [a.scope for a in alerts.recent()] == ["c", "b"]
        assert [a.scope for a in alerts.recent(1)] == ["c"]

    def test_sinks_receive_outbound_payload(self, clock):
        alerts = AlertManager(clock=clock)
        received = []
        alerts.add_sink(lambda alert: received.append(alert.to_dict()))

        alerts.maybe_emit(
            AlertType.EXPERIMENT_SIGNIFICANT, "headline-test", AlertSeverity.INFO, "B wins"
        )

        assert len(received) == 1
        payload = received[0]
        assert payload["kind"] == "experiment_significant"
        assert payload["scope"] == "headline-test"
        assert payload["severity"] == "info"
        assert payload["message"] == "B wins"
        assert payload["timestamp"] == clock.now.isoformat()

    def test_failing_sink_does_not_break_emission(self, clock):
        alerts = AlertManager(clock=clock)

        def broken(alert):
            raise RuntimeError("notification channel down")

        alerts.add_sink(broken)

        assert alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "landing", AlertSeverity.WARNING, "a")
        assert len(alerts.recent()) == 1

    def test_suppressed_until_marks_end_of_cooldown(self, clock):
        alerts = AlertManager(cooldowns={"high_drop_off": 3600}, clock=clock)
        alerts.maybe_emit(AlertType.HIGH_DROP_OFF, "landing", AlertSeverity.WARNING, "a")

        alert = alerts.recent()[0]
        assert alert.created_at == clock.now
        assert alert.suppressed_until == clock.now + timedelta(hours=1)
