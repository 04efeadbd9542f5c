from .layout import VariableLayout, STATE_FIELDS, ACTUATION_FIELDS
from .kinematic_bicycle import (
    VehicleState,
    Actuation,
    predict_next_state,
    create_step_function,
    rollout,
    integrate_pose,
)

__all__ = [
    'VariableLayout',
    'STATE_FIELDS',
    'ACTUATION_FIELDS',

    'VehicleState',
    'Actuation',
    'predict_next_state',
    'create_step_function',
    'rollout',
    'integrate_pose',
]
