from multiphysics.coupling import CouplingPair, TransferSpec
from multiphysics.domain import ConservationLaw, CorrectionRecord, Discretization
from multiphysics.physics import ThermalDomain
from multiphysics.simulation import PhysicsDomainManager


def line(nb_nodes=10, length=1.0, origin=0.0):
    return Discretization.uniform(origin, length, nb_nodes)


def both_ways(a, b, fields, **kwargs):
    """Coupling pairs exchanging `fields` in both directions."""
    return [CouplingPair(a, b, TransferSpec(fields), **kwargs), CouplingPair(b, a, TransferSpec(fields), **kwargs)]


def create_manager(domains, pairs=(), **kwargs):
    manager = PhysicsDomainManager(**kwargs)
    for domain in domains:
        manager.add_domain(domain)
    for pair in pairs:
        manager.add_coupling(pair)
    return manager


def total_energy(manager):
    return sum(state.energy for state in manager.get_states().values())


def total_momentum(manager):
    return sum(state.momentum for state in manager.get_states().values())


class StubbornThermalDomain(ThermalDomain):
    """Acknowledges energy corrections but never applies them."""

    def apply_energy_correction(self, delta, spatial_context=None):
        return CorrectionRecord(self.domain_id, ConservationLaw.energy, float(delta), 0.0)


def random_profile(rng, nb_nodes, low=280.0, high=420.0):
    return low + (high - low) * rng.random(nb_nodes)


def assert_states_identical(before, after):
    assert set(before) == set(after)
    for domain_id in before:
        assert before[domain_id].is_identical_to(after[domain_id]), f"Domain '{domain_id}' changed."
