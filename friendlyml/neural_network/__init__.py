from friendlyml.neural_network.diy_neural_network import DiyNeuralNetwork, neural_network
from friendlyml.neural_network.layers import build_layer
from friendlyml.neural_network.neural_network import NeuralNetwork
from friendlyml.neural_network.neural_network_data import NeuralNetworkData

__all__ = [
    "DiyNeuralNetwork",
    "neural_network",
    "NeuralNetwork",
    "NeuralNetworkData",
    "build_layer",
]
