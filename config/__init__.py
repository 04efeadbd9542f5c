from .mpc import MPCConfig, CostWeights, get_mpc_config, available_profiles

__all__ = [
    'MPCConfig',
    'CostWeights',
    'get_mpc_config',
    'available_profiles',
]
