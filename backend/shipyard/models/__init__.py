# Models package
from shipyard.models.app import App, AppStatus
from shipyard.models.deployment import Deployment, DeploymentStatus
