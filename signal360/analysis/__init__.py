from .technical import TechnicalAnalyzer, TechnicalAnalyzerPlugin
from .synthesis import SynthesisEngine, SynthesisInput, SynthesisOutput
from .trade_parameters import TradeParameters, compute_trade_parameters
from .parameters import ContextParameters, resolve_parameters
