from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.broker.mt5 import MT5Broker
from mt5_orchestrator.broker.sim import SimBroker

__all__ = ["Broker", "MT5Broker", "SimBroker"]
