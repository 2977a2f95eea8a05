__version__ = '1.0.0'

from accountdispatch.client import BatchPublisher as BatchPublisher
from accountdispatch.client import CandidateSelector as CandidateSelector
from accountdispatch.client import Dispatcher as Dispatcher
from accountdispatch.client import DispatchCycle as DispatchCycle
from accountdispatch.client import LeaseCoordinator as LeaseCoordinator
from accountdispatch.client import LeaseDecodeError as LeaseDecodeError
from accountdispatch.client import RedisQueue as RedisQueue
from accountdispatch.client import TickScheduler as TickScheduler
from accountdispatch.config import DispatchConfig as DispatchConfig
from accountdispatch.config import \
    build_connection_string as build_connection_string
from accountdispatch.schema import get_table_names as get_table_names
