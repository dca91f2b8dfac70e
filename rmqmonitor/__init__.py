"""Watch RabbitMQ queues through the management API and log alerts for stuck ones."""

__version__ = "0.1.0"
__all__ = ["__version__"]