import itertools

import pytest

from argocd_manager import (
    STATE_MESSAGES,
    EnvironmentState,
    LifecycleController,
    Observation,
    classify_observation,
)


def expected_state(cluster, namespace, workload, tunnel):
    if not cluster:
        return EnvironmentState.CLUSTER_ABSENT
    if not namespace:
        return EnvironmentState.NOT_INSTALLED
    if not workload:
        return EnvironmentState.PODS_DOWN
    if not tunnel:
        return EnvironmentState.NO_ACCESS
    return EnvironmentState.RUNNING


@pytest.mark.unit
class TestClassifyObservation:
    """Tests for the pure state classifier."""

    @pytest.mark.parametrize("flags", list(itertools.product([False, True], repeat=4)))
    def test_every_observation_maps_to_one_state(self, flags):
        """Test that all sixteen observations classify, by priority order."""
        state = classify_observation(Observation(*flags))

        assert isinstance(state, EnvironmentState)
        assert state is expected_state(*flags)

    def test_cluster_checked_before_everything(self):
        """Test that a missing cluster wins even if later checks pass."""
        observation = Observation(False, True, True, True)
        assert classify_observation(observation) is EnvironmentState.CLUSTER_ABSENT

    def test_tunnel_only_matters_when_workload_runs(self):
        """Test that a live tunnel does not hide a stopped server."""
        observation = Observation(True, True, False, True)
        assert classify_observation(observation) is EnvironmentState.PODS_DOWN

    def test_same_input_same_output(self):
        """Test that classification has no hidden state."""
        observation = Observation(True, True, True, False)
        first = classify_observation(observation)
        second = classify_observation(observation)
        assert first is second is EnvironmentState.NO_ACCESS

    def test_every_state_has_a_message(self):
        """Test that status output can describe every state."""
        assert set(STATE_MESSAGES) == set(EnvironmentState)

    def test_every_state_has_a_remediation(self):
        """Test that reconcile knows what to do from every state."""
        assert set(LifecycleController.REMEDIATION) == set(EnvironmentState)
        assert LifecycleController.REMEDIATION[EnvironmentState.RUNNING] == ()


@pytest.mark.unit
class TestControllerObservations:
    """Tests for observations taken through the controller."""

    @pytest.mark.parametrize(
        "setup, state",
        [
            ("put_in_cluster_absent", EnvironmentState.CLUSTER_ABSENT),
            ("put_in_not_installed", EnvironmentState.NOT_INSTALLED),
            ("put_in_pods_down", EnvironmentState.PODS_DOWN),
            ("put_in_no_access", EnvironmentState.NO_ACCESS),
            ("put_in_running", EnvironmentState.RUNNING),
        ],
    )
    def test_classify_reads_the_world(self, controller, world, setup, state):
        """Test that classify reflects the fake environment."""
        getattr(world, setup)()
        assert controller.classify() is state

    def test_classify_is_not_cached(self, controller, world):
        """Test that a change in the world shows up on the next call."""
        world.put_in_running()
        assert controller.classify() is EnvironmentState.RUNNING

        world.tunnel = None
        assert controller.classify() is EnvironmentState.NO_ACCESS

    def test_observe_short_circuits_on_missing_cluster(self, controller, world):
        """Test that later checks are reported false once the cluster is absent."""
        world.namespaces.add("argocd")
        world.installed = True
        world.replicas = 1
        assert controller.observe() == Observation(False, False, False, False)
